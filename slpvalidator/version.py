SLPVALIDATOR_VERSION = '0.1.0'   # version of the client package

PROTOCOL_VERSION = '1.4'     # electrum protocol version requested
