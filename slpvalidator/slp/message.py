from enum import Enum
from typing import List, Optional, Tuple, Union

import attr

from ..bitcoin import opcodes, push_data_explicit
from ..transaction import script_GetOp, MalformedBitcoinScript, Transaction
from ..util import is_hash256_str

from .exceptions import *

lokad_id = b"SLP\x00"  # aka protocol code (prefix) -- this appears after the 'OP_RETURN + OP_PUSH(4)' bytes in the ScriptOutput for *ALL* SLP scripts
valid_token_types = frozenset((1,))  # any token types not in this set will be rejected

MAX_SEND_OUTPUTS = 19
MAX_OP_RETURN_SIZE = 223


class TransactionType(Enum):
    GENESIS = 'GENESIS'
    MINT = 'MINT'
    SEND = 'SEND'


def _to_bytes(x) -> bytes:
    if x is None:
        return b''
    if isinstance(x, str):
        return x.encode('utf-8')
    return bytes(x)


def _to_token_id_hex(x) -> str:
    if isinstance(x, (bytes, bytearray)):
        return bytes(x).hex()
    return str(x).lower()


class Message:
    ''' Base of the three SLP message variants (GENESIS, MINT, SEND).

    Instances are immutable and only ever hold consensus-valid field values
    when produced by Message.parse(). Use Build.encode() for the inverse.

    Variants share a small common interface so the validator can stay
    agnostic of which fields live where:
      - quantity_for_output(n): tokens placed on output n (None if none)
      - is_baton_output(n): whether output n carries the minting baton
    '''

    transaction_type = None  # type: TransactionType

    @classmethod
    def parse(cls, script: bytes) -> 'TokenMessage':
        ''' This method attempts to parse an output script as an SLP message.

            Bad scripts will throw a subclass of ParsingError; any other
            exception indicates a bug in this code.
            - Non-SLP scripts, unrecognized token types and unknown
              transaction types throw NotProtocolMessage.
            - It is a STRICT parser -- consensus-invalid messages throw
              MalformedMessage.

            Returns a GenesisMessage, MintMessage or SendMessage.
            '''
        chunks = _parse_opreturn_to_chunks(bytes(script))
        return _message_from_chunks(chunks)

    def quantity_for_output(self, n: int) -> Optional[int]:
        raise NotImplementedError()

    def is_baton_output(self, n: int) -> bool:
        return False

    def to_json(self) -> dict:
        raise NotImplementedError()


@attr.s(frozen=True, kw_only=True)
class GenesisMessage(Message):
    token_type = attr.ib(type=int, default=1)
    ticker = attr.ib(type=bytes, default=b'', converter=_to_bytes)
    token_name = attr.ib(type=bytes, default=b'', converter=_to_bytes)
    token_doc_url = attr.ib(type=bytes, default=b'', converter=_to_bytes)
    token_doc_hash = attr.ib(type=bytes, default=b'', converter=_to_bytes)  # empty or 32 bytes
    decimals = attr.ib(type=int, default=0)
    mint_baton_vout = attr.ib(type=Optional[int], default=None)
    initial_token_mint_quantity = attr.ib(type=int)

    transaction_type = TransactionType.GENESIS

    @property
    def genesis_or_mint_quantity(self) -> int:
        return self.initial_token_mint_quantity

    def quantity_for_output(self, n: int) -> Optional[int]:
        return self.initial_token_mint_quantity if n == 1 else None

    def is_baton_output(self, n: int) -> bool:
        return self.mint_baton_vout is not None and n == self.mint_baton_vout

    def to_json(self) -> dict:
        return {
            'transaction_type': self.transaction_type.value,
            'token_type': self.token_type,
            'ticker': self.ticker.decode('utf-8', errors='replace'),
            'token_name': self.token_name.decode('utf-8', errors='replace'),
            'token_doc_url': self.token_doc_url.decode('utf-8', errors='replace'),
            'token_doc_hash': self.token_doc_hash.hex(),
            'decimals': self.decimals,
            'mint_baton_vout': self.mint_baton_vout,
            'genesis_or_mint_quantity': self.initial_token_mint_quantity,
        }


@attr.s(frozen=True, kw_only=True)
class MintMessage(Message):
    token_type = attr.ib(type=int, default=1)
    token_id_hex = attr.ib(type=str, converter=_to_token_id_hex)
    mint_baton_vout = attr.ib(type=Optional[int], default=None)
    additional_token_quantity = attr.ib(type=int)

    transaction_type = TransactionType.MINT

    @property
    def genesis_or_mint_quantity(self) -> int:
        return self.additional_token_quantity

    def quantity_for_output(self, n: int) -> Optional[int]:
        return self.additional_token_quantity if n == 1 else None

    def is_baton_output(self, n: int) -> bool:
        return self.mint_baton_vout is not None and n == self.mint_baton_vout

    def to_json(self) -> dict:
        return {
            'transaction_type': self.transaction_type.value,
            'token_type': self.token_type,
            'token_id_hex': self.token_id_hex,
            'mint_baton_vout': self.mint_baton_vout,
            'genesis_or_mint_quantity': self.additional_token_quantity,
        }


@attr.s(frozen=True, kw_only=True)
class SendMessage(Message):
    token_type = attr.ib(type=int, default=1)
    token_id_hex = attr.ib(type=str, converter=_to_token_id_hex)
    # token_output[0] goes to vout=1; vout=0 is the OP_RETURN itself
    token_output = attr.ib(type=Tuple[int, ...], converter=tuple)

    transaction_type = TransactionType.SEND

    @property
    def send_outputs(self) -> Tuple[int, ...]:
        return self.token_output

    def quantity_for_output(self, n: int) -> Optional[int]:
        if 1 <= n <= len(self.token_output):
            return self.token_output[n - 1]
        return None

    def total_output_quantity(self) -> int:
        return sum(self.token_output)

    def to_json(self) -> dict:
        return {
            'transaction_type': self.transaction_type.value,
            'token_type': self.token_type,
            'token_id_hex': self.token_id_hex,
            'send_outputs': list(self.token_output),
        }


TokenMessage = Union[GenesisMessage, MintMessage, SendMessage]


@attr.s(frozen=True, kw_only=True)
class OutputOwnership:
    ''' Token attribution of a single transaction output. '''
    token_id_hex = attr.ib(type=str)
    transaction_type = attr.ib(type=TransactionType)
    quantity = attr.ib(type=Optional[int], default=None)
    is_baton = attr.ib(type=bool, default=False)


# --- PARSING HELPERS ---

def _parse_chunk_to_int(intBytes: bytes, minByteLen: int, maxByteLen: Optional[int], raise_on_Null: bool = False):
    # Parse data as unsigned-big-endian encoded integer.
    # For empty data different possibilities may occur:
    #      minByteLen <= 0 : return 0
    #      raise_on_Null == False and minByteLen > 0: return None
    #      raise_on_Null == True and minByteLen > 0:  raise MalformedMessage
    if len(intBytes) >= minByteLen and (maxByteLen is None or len(intBytes) <= maxByteLen):
        return int.from_bytes(intBytes, 'big', signed=False)
    if len(intBytes) == 0 and not raise_on_Null:
        return None
    raise MalformedMessage('Field has wrong length')


def _parse_quantity(intBytes: bytes) -> int:
    # variable width, but never empty
    return _parse_chunk_to_int(intBytes, 1, None, True)


def _bad_script(chunks: List[bytes], reason: str) -> ParsingError:
    # once the lokad id has been seen the script claims to be SLP, so
    # anything wrong after that point is a malformed message.
    if chunks and chunks[0] == lokad_id:
        return MalformedMessage(reason)
    return NotProtocolMessage(reason)


def _parse_opreturn_to_chunks(script: bytes) -> List[bytes]:
    """Extract pushed bytes after OP_RETURN. Returns list of bytes() objects,
    one per push.

    The small-integer opcodes OP_0 and OP_1 .. OP_16 are normalized to the
    one-byte push of the same value, so OP_5 and the explicit push 0x01 0x05
    yield the same chunk. Any other non-push opcode is refused."""
    if not script or script[0] != opcodes.OP_RETURN:
        raise NotProtocolMessage('No OP_RETURN')

    chunks = []
    try:
        for op, data, _pos in script_GetOp(script[1:]):
            if op > opcodes.OP_16 or op in (opcodes.OP_1NEGATE, opcodes.OP_RESERVED):
                raise _bad_script(chunks, 'Non-push opcode')
            if op == opcodes.OP_0:
                data = b'\x00'
            elif op >= opcodes.OP_1:
                data = bytes((op - opcodes.OP_1 + 1,))
            chunks.append(bytes(data))
    except MalformedBitcoinScript as e:
        raise _bad_script(chunks, 'Script ending mid-push') from e
    return chunks


def _message_from_chunks(chunks: List[bytes]) -> TokenMessage:
    ''' Checks if chunks is a valid SLP OP_RETURN message.

    Returns the message or raises if not valid. '''
    if not chunks:
        raise NotProtocolMessage('Empty OP_RETURN')

    if chunks[0] != lokad_id:
        raise NotProtocolMessage('Not SLP')

    if len(chunks) <= 1:
        raise MalformedMessage('Missing token_type')

    # check if the token version is supported
    token_type = _parse_chunk_to_int(chunks[1], 1, 2, True)
    if token_type not in valid_token_types:
        raise UnsupportedSlpTokenType(token_type)

    if len(chunks) <= 2:
        raise MalformedMessage('Missing SLP command')

    try:
        transaction_type = chunks[2].decode('ascii').upper()
    except UnicodeDecodeError:
        # This can occur if non-ascii bytes present (byte > 127)
        raise NotProtocolMessage('Bad transaction type')

    # switch statement to handle different on transaction type
    if transaction_type == 'GENESIS':
        if len(chunks) != 10:
            raise MalformedMessage('GENESIS with incorrect number of parameters')
        # keep ticker, token name, document url, document hash as bytes
        # (their textual encoding is not relevant for SLP consensus)
        # but do enforce consensus length limits
        if len(chunks[6]) not in (0, 32):
            raise MalformedMessage('Token document hash is incorrect length')

        # decimals -- one byte in range 0-9
        decimals = _parse_chunk_to_int(chunks[7], 1, 1, True)
        if decimals > 9:
            raise MalformedMessage('Too many decimals')

        ## handle baton for additional minting, but may be empty
        v = _parse_chunk_to_int(chunks[8], 1, 1)
        if v is not None and v < 2:
            raise MalformedMessage('Mint baton cannot be on vout=0 or 1')

        return GenesisMessage(
            token_type=token_type,
            ticker=chunks[3],
            token_name=chunks[4],
            token_doc_url=chunks[5],
            token_doc_hash=chunks[6],
            decimals=decimals,
            mint_baton_vout=v,
            initial_token_mint_quantity=_parse_quantity(chunks[9]),
        )
    elif transaction_type == 'MINT':
        if len(chunks) != 6:
            raise MalformedMessage('MINT with incorrect number of parameters')
        if len(chunks[3]) != 32:
            raise MalformedMessage('token_id is wrong length')
        v = _parse_chunk_to_int(chunks[4], 1, 1)
        if v is not None and v < 2:
            raise MalformedMessage('Mint baton cannot be on vout=0 or 1')
        return MintMessage(
            token_type=token_type,
            token_id_hex=chunks[3].hex(),
            mint_baton_vout=v,
            additional_token_quantity=_parse_quantity(chunks[5]),
        )
    elif transaction_type == 'SEND':
        if len(chunks) < 4:
            raise MalformedMessage('SEND with too few parameters')
        if len(chunks[3]) != 32:
            raise MalformedMessage('token_id is wrong length')
        # maximum 19 allowed token outputs
        amounts = chunks[4:]
        if len(amounts) < 1:
            raise MalformedMessage('Missing output amounts')
        if len(amounts) > MAX_SEND_OUTPUTS:
            raise MalformedMessage('More than 19 output amounts')
        return SendMessage(
            token_type=token_type,
            token_id_hex=chunks[3].hex(),
            token_output=tuple(_parse_quantity(field) for field in amounts),
        )
    raise NotProtocolMessage('Bad transaction type', transaction_type)


class Build:
    ''' Namespace of all static methods involved in SLP OP_RETURN message
    building.

    Various exceptions can occur:
       SerializingError / subclass if bad values.
    '''

    @staticmethod
    def pushChunk(chunk: bytes) -> bytes:
        '''utility for creation: use smallest push except not any of: op_0, op_1negate, op_1 to op_16'''
        return push_data_explicit(chunk)

    @staticmethod
    def quantityChunk(qty: int) -> bytes:
        ''' minimal-width unsigned big-endian, at least one byte '''
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 0:
            raise SerializingError('Token quantity must be a non-negative int', qty)
        return qty.to_bytes(max(1, (qty.bit_length() + 7) // 8), 'big')

    @staticmethod
    def chunksToOpreturnScript(chunks: List[bytes]) -> bytes:
        ''' utility for creation '''
        script = bytearray((opcodes.OP_RETURN,))  # start with OP_RETURN
        for c in chunks:
            script.extend(Build.pushChunk(c))

        if len(script) > MAX_OP_RETURN_SIZE:
            raise OPReturnTooLarge(f'OP_RETURN message too large, cannot be larger than {MAX_OP_RETURN_SIZE} bytes')
        return bytes(script)

    @staticmethod
    def _tokenTypeChunk(token_type: int) -> bytes:
        if token_type not in valid_token_types:
            raise SerializingError('Unsupported token type', token_type)
        return bytes((token_type,))

    @staticmethod
    def _tokenIdChunk(token_id_hex: str) -> bytes:
        if not is_hash256_str(token_id_hex):
            raise SerializingError('token_id must be 32 bytes hex', token_id_hex)
        return bytes.fromhex(token_id_hex)

    @staticmethod
    def _batonChunk(baton_vout: Optional[int]) -> bytes:
        if baton_vout is None:
            return b''
        if not isinstance(baton_vout, int) or not 2 <= baton_vout <= 255:
            raise SerializingError('Mint baton vout must be in range 2-255', baton_vout)
        return bytes((baton_vout,))

    @staticmethod
    def genesis(message: GenesisMessage) -> bytes:
        ''' Type 1 Token GENESIS Message '''
        if len(message.token_doc_hash) not in (0, 32):
            raise SerializingError('Token document hash must be empty or 32 bytes')
        if not isinstance(message.decimals, int) or not 0 <= message.decimals <= 9:
            raise SerializingError('Decimals must be in range 0-9', message.decimals)
        chunks = [
            lokad_id,
            Build._tokenTypeChunk(message.token_type),
            b'GENESIS',
            message.ticker,
            message.token_name,
            message.token_doc_url,
            message.token_doc_hash,
            bytes((message.decimals,)),
            Build._batonChunk(message.mint_baton_vout),
            Build.quantityChunk(message.initial_token_mint_quantity),
        ]
        return Build.chunksToOpreturnScript(chunks)

    @staticmethod
    def mint(message: MintMessage) -> bytes:
        ''' Type 1 Token MINT Message '''
        chunks = [
            lokad_id,
            Build._tokenTypeChunk(message.token_type),
            b'MINT',
            Build._tokenIdChunk(message.token_id_hex),
            Build._batonChunk(message.mint_baton_vout),
            Build.quantityChunk(message.additional_token_quantity),
        ]
        return Build.chunksToOpreturnScript(chunks)

    @staticmethod
    def send(message: SendMessage) -> bytes:
        ''' Type 1 Token SEND Message '''
        if len(message.token_output) < 1:
            raise SerializingError("Cannot have less than 1 SLP Token output.")
        if len(message.token_output) > MAX_SEND_OUTPUTS:
            raise SerializingError("Cannot have more than 19 SLP Token outputs.")
        chunks = [
            lokad_id,
            Build._tokenTypeChunk(message.token_type),
            b'SEND',
            Build._tokenIdChunk(message.token_id_hex),
        ]
        chunks.extend(Build.quantityChunk(qty) for qty in message.token_output)
        return Build.chunksToOpreturnScript(chunks)

    @staticmethod
    def encode(message: TokenMessage) -> bytes:
        ''' Serializes a message to an OP_RETURN script.

        Raises OPReturnTooLarge for scripts over MAX_OP_RETURN_SIZE. That
        limit is a relay policy, not a consensus rule, so Message.parse
        accepts larger scripts: decode(encode(m)) == m holds, but a decoded
        message cannot always be encoded again.
        '''
        if isinstance(message, GenesisMessage):
            return Build.genesis(message)
        elif isinstance(message, MintMessage):
            return Build.mint(message)
        elif isinstance(message, SendMessage):
            return Build.send(message)
        raise SerializingError('Not an SLP message', message)


decode = Message.parse
encode = Build.encode


def decode_output_ownership(tx: Transaction, output_index: int, *, txid: str = None) -> OutputOwnership:
    ''' Reports the token attribution of tx output `output_index` only.

    `txid` may be passed to avoid re-hashing the transaction; it is the
    token id when `tx` is a GENESIS.

    Raises NotProtocolMessage / MalformedMessage if output 0 is not a valid
    SLP message, NotSlpOutput if the output carries neither tokens nor the
    minting baton. '''
    outputs = tx.outputs()
    if not 0 <= output_index < len(outputs):
        raise NotSlpOutput(f'No such output {output_index}')
    message = Message.parse(outputs[0].scriptpubkey)
    if message.transaction_type == TransactionType.GENESIS:
        token_id_hex = txid or tx.txid()
    else:
        token_id_hex = message.token_id_hex
    if message.is_baton_output(output_index):
        return OutputOwnership(token_id_hex=token_id_hex,
                               transaction_type=message.transaction_type,
                               is_baton=True)
    quantity = message.quantity_for_output(output_index)
    if quantity is None:
        raise NotSlpOutput(f'Not a SLP txout: {output_index}')
    return OutputOwnership(token_id_hex=token_id_hex,
                           transaction_type=message.transaction_type,
                           quantity=quantity)
