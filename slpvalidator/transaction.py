#!/usr/bin/env python
#
# Electrum - lightweight Bitcoin client
# Copyright (C) 2011 Thomas Voegtlin
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.



# Note: The deserialization code originally comes from ABE.

import struct
from typing import Sequence, Union, NamedTuple, Optional, List, Iterator, Tuple

from .util import bfh, is_hex_str
from .bitcoin import var_int, TOTAL_COIN_SUPPLY_LIMIT_IN_BTC, COIN, opcodes
from .crypto import txid_from_raw


class SerializationError(Exception):
    """ Thrown when there's a problem deserializing or serializing """


class MalformedBitcoinScript(Exception):
    pass


class TxOutput:
    scriptpubkey: bytes
    value: int

    def __init__(self, *, scriptpubkey: bytes, value: int):
        self.scriptpubkey = scriptpubkey
        if not isinstance(value, int):
            raise ValueError(f"bad txout value: {value!r}")
        self.value = value  # int in satoshis

    def serialize_to_network(self) -> bytes:
        buf = int.to_bytes(self.value, 8, byteorder="little", signed=False)
        script = self.scriptpubkey
        buf += var_int(len(script))
        buf += script
        return buf

    def __repr__(self):
        return f"<TxOutput script={self.scriptpubkey.hex()} value={self.value}>"

    def __eq__(self, other):
        if not isinstance(other, TxOutput):
            return False
        return self.scriptpubkey == other.scriptpubkey and self.value == other.value

    def __ne__(self, other):
        return not (self == other)


class TxOutpoint(NamedTuple):
    txid: bytes  # endianness same as hex string displayed; reverse of tx serialization order
    out_idx: int

    def __str__(self) -> str:
        return f"""TxOutpoint("{self.txid.hex()}:{self.out_idx}")"""

    def __repr__(self):
        return f"<{str(self)}>"

    def serialize_to_network(self) -> bytes:
        return self.txid[::-1] + int.to_bytes(self.out_idx, length=4, byteorder="little", signed=False)

    def is_coinbase(self) -> bool:
        return self.txid == bytes(32)


class TxInput:
    prevout: TxOutpoint
    script_sig: bytes
    nsequence: int

    def __init__(self, *,
                 prevout: TxOutpoint,
                 script_sig: bytes = b'',
                 nsequence: int = 0xffffffff - 1):
        self.prevout = prevout
        self.script_sig = script_sig
        self.nsequence = nsequence

    @property
    def prevout_txid(self) -> str:
        return self.prevout.txid.hex()

    def is_coinbase_input(self) -> bool:
        """Whether this is the input of a coinbase tx."""
        return self.prevout.is_coinbase()

    def serialize_to_network(self) -> bytes:
        # Prev hash and index
        s = self.prevout.serialize_to_network()
        # Script length, script, sequence
        s += var_int(len(self.script_sig))
        s += self.script_sig
        s += int.to_bytes(self.nsequence, length=4, byteorder="little", signed=False)
        return s


class BCDataStream(object):
    """Workalike python implementation of Bitcoin's CDataStream class."""

    def __init__(self):
        self.input = None  # type: Optional[bytearray]
        self.read_cursor = 0

    def write(self, _bytes: Union[bytes, bytearray]):  # Initialize with string of _bytes
        assert isinstance(_bytes, (bytes, bytearray))
        if self.input is None:
            self.input = bytearray(_bytes)
        else:
            self.input += bytearray(_bytes)

    def read_bytes(self, length: int) -> bytes:
        if self.input is None:
            raise SerializationError("call write(bytes) before trying to deserialize")
        assert length >= 0
        input_len = len(self.input)
        read_begin = self.read_cursor
        read_end = read_begin + length
        if 0 <= read_begin <= read_end <= input_len:
            result = self.input[read_begin:read_end]  # type: bytearray
            self.read_cursor += length
            return bytes(result)
        else:
            raise SerializationError('attempt to read past end of buffer')

    def can_read_more(self) -> bool:
        if not self.input:
            return False
        return self.read_cursor < len(self.input)

    def read_int32(self): return self._read_num('<i')
    def read_uint32(self): return self._read_num('<I')
    def read_int64(self): return self._read_num('<q')

    def read_compact_size(self):
        try:
            size = self.input[self.read_cursor]
            self.read_cursor += 1
            if size == 253:
                size = self._read_num('<H')
            elif size == 254:
                size = self._read_num('<I')
            elif size == 255:
                size = self._read_num('<Q')
            return size
        except (IndexError, TypeError) as e:
            raise SerializationError("attempt to read past end of buffer") from e

    def _read_num(self, format):
        try:
            (i,) = struct.unpack_from(format, self.input, self.read_cursor)
            self.read_cursor += struct.calcsize(format)
        except Exception as e:
            raise SerializationError(e) from e
        return i


def script_GetOp(_bytes : bytes) -> Iterator[Tuple[int, Optional[bytes], int]]:
    i = 0
    while i < len(_bytes):
        vch = None
        opcode = _bytes[i]
        i += 1

        if opcode <= opcodes.OP_PUSHDATA4:
            nSize = opcode
            if opcode == opcodes.OP_PUSHDATA1:
                try: nSize = _bytes[i]
                except IndexError: raise MalformedBitcoinScript()
                i += 1
            elif opcode == opcodes.OP_PUSHDATA2:
                try: (nSize,) = struct.unpack_from('<H', _bytes, i)
                except struct.error: raise MalformedBitcoinScript()
                i += 2
            elif opcode == opcodes.OP_PUSHDATA4:
                try: (nSize,) = struct.unpack_from('<I', _bytes, i)
                except struct.error: raise MalformedBitcoinScript()
                i += 4
            if i + nSize > len(_bytes):
                # script ends mid-push
                raise MalformedBitcoinScript()
            vch = _bytes[i:i + nSize]
            i += nSize

        yield opcode, vch, i


def parse_input(vds: BCDataStream) -> TxInput:
    prevout_hash = vds.read_bytes(32)[::-1]
    prevout_n = vds.read_uint32()
    prevout = TxOutpoint(txid=prevout_hash, out_idx=prevout_n)
    script_sig = vds.read_bytes(vds.read_compact_size())
    nsequence = vds.read_uint32()
    return TxInput(prevout=prevout, script_sig=script_sig, nsequence=nsequence)


def parse_output(vds: BCDataStream) -> TxOutput:
    value = vds.read_int64()
    if value > TOTAL_COIN_SUPPLY_LIMIT_IN_BTC * COIN:
        raise SerializationError('invalid output amount (too large)')
    if value < 0:
        raise SerializationError('invalid output amount (negative)')
    scriptpubkey = vds.read_bytes(vds.read_compact_size())
    return TxOutput(value=value, scriptpubkey=scriptpubkey)


class Transaction:
    """A complete (signed or not, we do not care) legacy-serialized transaction.

    Token validation only ever looks at the inputs' outpoints and at the
    scripts of the outputs, so only those parts are exposed.
    """

    def __str__(self):
        return self.serialize()

    def __init__(self, raw: Union[str, bytes, bytearray, None]):
        if raw is None:
            self._cached_network_ser = None
        elif isinstance(raw, str):
            self._cached_network_ser = bfh(raw.strip()) if raw else None
            assert is_hex_str(raw.strip())
        elif isinstance(raw, (bytes, bytearray)):
            self._cached_network_ser = bytes(raw)
        else:
            raise Exception(f"cannot initialize transaction from {raw}")
        self._inputs = None  # type: Optional[List[TxInput]]
        self._outputs = None  # type: Optional[List[TxOutput]]
        self._locktime = 0
        self._version = 2
        self._cached_txid = None  # type: Optional[str]

    @classmethod
    def from_io(cls, inputs: Sequence[TxInput], outputs: Sequence[TxOutput], *,
                locktime: int = 0, version: int = 2) -> 'Transaction':
        self = cls(None)
        self._inputs = list(inputs)
        self._outputs = list(outputs)
        self._locktime = locktime
        self._version = version
        return self

    def inputs(self) -> Sequence[TxInput]:
        if self._inputs is None:
            self.deserialize()
        return self._inputs

    def outputs(self) -> Sequence[TxOutput]:
        if self._outputs is None:
            self.deserialize()
        return self._outputs

    def deserialize(self) -> None:
        if self._cached_network_ser is None:
            return
        if self._inputs is not None:
            return

        vds = BCDataStream()
        vds.write(self._cached_network_ser)
        self._version = vds.read_int32()
        n_vin = vds.read_compact_size()
        if n_vin < 1:
            raise SerializationError('tx needs to have at least 1 input')
        txins = [parse_input(vds) for i in range(n_vin)]
        n_vout = vds.read_compact_size()
        if n_vout < 1:
            raise SerializationError('tx needs to have at least 1 output')
        self._outputs = [parse_output(vds) for i in range(n_vout)]
        self._inputs = txins  # only expose field after outputs are parsed, for sanity
        self._locktime = vds.read_uint32()
        if vds.can_read_more():
            raise SerializationError('extra junk at the end')

    def serialize_as_bytes(self) -> bytes:
        if self._cached_network_ser is None:
            self._cached_network_ser = self.serialize_to_network()
        return self._cached_network_ser

    def serialize(self) -> str:
        return self.serialize_as_bytes().hex()

    def serialize_to_network(self) -> bytes:
        self.deserialize()
        inputs = self.inputs()
        outputs = self.outputs()
        nVersion = int.to_bytes(self._version, length=4, byteorder="little", signed=True)
        nLocktime = int.to_bytes(self._locktime, length=4, byteorder="little", signed=False)
        txins = var_int(len(inputs)) + b''.join(txin.serialize_to_network() for txin in inputs)
        txouts = var_int(len(outputs)) + b''.join(o.serialize_to_network() for o in outputs)
        return nVersion + txins + txouts + nLocktime

    def txid(self) -> str:
        if self._cached_txid is None:
            self._cached_txid = txid_from_raw(self.serialize_as_bytes())
        return self._cached_txid

    def input_txids(self) -> List[str]:
        """Distinct txids of the spent outpoints, in input order."""
        seen = []
        for txin in self.inputs():
            txid = txin.prevout_txid
            if txid not in seen:
                seen.append(txid)
        return seen
