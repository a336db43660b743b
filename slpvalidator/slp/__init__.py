from .exceptions import *
from .message import (Message, Build, GenesisMessage, MintMessage, SendMessage,
                      OutputOwnership, TransactionType, decode, encode,
                      decode_output_ownership, lokad_id, valid_token_types)
from .validation import (Validator, LocalValidator, ValidationCache, ValidationRecord,
                         Validity, InvalidReason)
from .proxy import ProxyValidator
