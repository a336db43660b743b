# All SLP-related Exceptions used by the slp package

class Error(Exception):
    ''' Base class for all SLP-related errors '''

class ParsingError(Error):
    ''' Exceptions caused by malformed or unexpected data found in parsing. '''

class NotProtocolMessage(ParsingError):
    ''' The script does not carry an SLP message at all: not an OP_RETURN,
        wrong lokad id, or a token type / transaction type we do not know. '''

class UnsupportedSlpTokenType(NotProtocolMessage):
    ''' Cannot parse OP_RETURN due to unrecognized version
        (may or may not be valid) '''

class MalformedMessage(ParsingError):
    ''' The lokad id is present but the message is definitely invalid
        under SLP consensus rules (missing fields, bad lengths, truncated
        pushes, forbidden opcodes). '''

class NotSlpOutput(Error):
    ''' The requested output index carries neither tokens nor a minting baton. '''

class SerializingError(Error):
    ''' Exceptions during creation of SLP message. '''

class OPReturnTooLarge(SerializingError):
    ''' The OPReturn field ended up being > 223 bytes '''

# Ancestry retrieval
class TransactionNotFound(Error):
    ''' Raised by a fetch capability when it positively knows a txid does not
        exist. Any other exception from a fetch capability is treated as a
        transient fault. '''

    def __init__(self, txid: str = None, *args):
        super().__init__(txid, *args)
        self.txid = txid
