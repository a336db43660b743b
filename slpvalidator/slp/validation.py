# Copyright (C) 2019 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

import asyncio
import functools
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum, IntEnum
from typing import (Any, Awaitable, Callable, Dict, Iterable, List, Optional,
                    Sequence, Set, Tuple, Union, TYPE_CHECKING)

import attr

from ..crypto import txid_from_raw
from ..logging import Logger
from ..transaction import Transaction, SerializationError
from ..util import OldTaskGroup, bfh, is_hash256_str

from .exceptions import (ParsingError, NotProtocolMessage, MalformedMessage,
                         TransactionNotFound)
from .message import Message, TransactionType, TokenMessage

if TYPE_CHECKING:
    from ..simple_config import SimpleConfig


# A fetch capability takes a list of txids and returns the transactions it
# found, each item being a (txid, raw) pair, raw bytes, or a raw hex string.
# It raises TransactionNotFound when it knows a requested tx does not exist.
FetchItem = Union[Tuple[str, Union[bytes, str]], bytes, str]
FetchCapability = Callable[[Sequence[str]], Awaitable[Sequence[FetchItem]]]

NULL_TXID = "00" * 32  # spent by coinbase inputs


class Validity(IntEnum):
    UNKNOWN = 0
    VALID = 1
    INVALID = 2


class InvalidReason(Enum):
    MISSING_ANCESTOR = 'MissingAncestor'
    MALFORMED_MESSAGE = 'MalformedMessage'
    NOT_PROTOCOL_MESSAGE = 'NotProtocolMessage'
    INVALID_MINT_AUTHORITY = 'InvalidMintAuthority'
    INVALID_PARENT = 'InvalidParent'
    INFLATION = 'Inflation'


@attr.s(kw_only=True)
class ValidationRecord:
    txid = attr.ib(type=str)
    raw = attr.ib(type=Optional[bytes], default=None, repr=False)
    validity = attr.ib(type=Validity, default=Validity.UNKNOWN)
    message = attr.ib(type=Optional[TokenMessage], default=None)
    token_id_hex = attr.ib(type=Optional[str], default=None)
    parents = attr.ib(type=Set[str], factory=set)
    invalid_reason = attr.ib(type=Optional[InvalidReason], default=None)
    decode_error = attr.ib(type=Optional[Exception], default=None, repr=False)
    # fetch capability said this tx does not exist
    missing = attr.ib(type=bool, default=False)
    decoded = attr.ib(type=bool, default=False, repr=False)
    tx = attr.ib(type=Optional[Transaction], default=None, repr=False, eq=False)

    def is_decided(self) -> bool:
        return self.validity != Validity.UNKNOWN

    def set_validity(self, validity: Validity, reason: InvalidReason = None) -> None:
        if self.is_decided():
            raise ValueError(f"validity of {self.txid} already decided: {self.validity.name}")
        if validity == Validity.UNKNOWN:
            raise ValueError("cannot reset validity to UNKNOWN")
        self.validity = validity
        self.invalid_reason = reason if validity == Validity.INVALID else None

    def transaction(self) -> Transaction:
        if self.tx is None:
            assert self.raw is not None, f"raw tx not available for {self.txid}"
            tx = Transaction(self.raw)
            tx.deserialize()
            self.tx = tx
        return self.tx


class ValidationCache:
    """txid -> ValidationRecord. Records are never removed."""

    def __init__(self):
        self._records = {}  # type: Dict[str, ValidationRecord]

    def get(self, txid: str) -> Optional[ValidationRecord]:
        return self._records.get(txid)

    def get_or_create(self, txid: str) -> ValidationRecord:
        record = self._records.get(txid)
        if record is None:
            record = self._records[txid] = ValidationRecord(txid=txid)
        return record

    def validity(self, txid: str) -> Validity:
        record = self._records.get(txid)
        return record.validity if record else Validity.UNKNOWN

    def __contains__(self, txid) -> bool:
        return txid in self._records

    def __len__(self) -> int:
        return len(self._records)


class Validator(ABC):

    @abstractmethod
    async def is_valid(self, txid: str) -> bool:
        pass

    async def validate_transactions(self, txids: Iterable[str]) -> List[str]:
        """Returns the subset of txids that are valid, in the given order."""
        txids = list(txids)
        async with OldTaskGroup() as group:
            tasks = [await group.spawn(self.is_valid(txid)) for txid in txids]
        return [txid for txid, task in zip(txids, tasks) if task.result()]


def _raw_from_fetch_item(item: FetchItem) -> bytes:
    if isinstance(item, (tuple, list)):
        item = item[1]
    if isinstance(item, str):
        return bfh(item)
    if isinstance(item, (bytes, bytearray)):
        return bytes(item)
    raise TypeError(f"unexpected item from fetch capability: {item!r}")


class LocalValidator(Validator, Logger):
    """Validates SLP transactions by walking their token ancestry.

    Every verdict is memoized in self.cache. For each txid at most one
    validation task and one fetch task are in flight; concurrent callers
    await the same task (shielded, so an abandoned caller does not cancel
    work other callers depend on).

    Only faults of the fetch capability itself (anything except
    TransactionNotFound) are raised from is_valid; such a failure leaves the
    record undecided so that a later call retries.
    """

    LOGGING_SHORTCUT = 'V'

    def __init__(self, get_raw_transactions: FetchCapability, *,
                 config: 'SimpleConfig' = None,
                 max_concurrent_fetches: int = None,
                 cache: ValidationCache = None):
        Logger.__init__(self)
        self._get_raw_transactions = get_raw_transactions
        if max_concurrent_fetches is None:
            max_concurrent_fetches = config.SLP_MAX_CONCURRENT_FETCHES if config else 10
        self._max_concurrent_fetches = max_concurrent_fetches
        self._fetch_sem = None  # type: Optional[asyncio.Semaphore]
        self.cache = cache if cache is not None else ValidationCache()
        self._validation_tasks = {}  # type: Dict[str, asyncio.Task]
        self._fetch_tasks = {}  # type: Dict[str, asyncio.Task]

    # --- public API

    async def is_valid(self, txid: str) -> bool:
        txid = self._normalize_txid(txid)
        record = self.cache.get(txid)
        if record is not None and record.is_decided():
            return record.validity == Validity.VALID
        task = self._validation_tasks.get(txid)
        if task is None or task.done():
            task = asyncio.create_task(self._validate(txid))
            self._validation_tasks[txid] = task
            task.add_done_callback(functools.partial(self._on_validation_done, txid))
        validity = await asyncio.shield(task)
        return validity == Validity.VALID

    def get_invalid_reason(self, txid: str) -> Optional[InvalidReason]:
        record = self.cache.get(self._normalize_txid(txid))
        return record.invalid_reason if record else None

    def add_validation_from_store(self, raw: Union[bytes, str], is_valid: bool) -> str:
        """Preloads a verdict computed earlier (e.g. persisted by the caller).
        Returns the txid."""
        if isinstance(raw, str):
            raw = bfh(raw)
        raw = bytes(raw)
        txid = txid_from_raw(raw)
        record = self.cache.get_or_create(txid)
        if record.raw is None:
            record.raw = raw
            record.missing = False
        validity = Validity.VALID if is_valid else Validity.INVALID
        if record.is_decided():
            if record.validity != validity:
                raise ValueError(f"conflicting stored validity for {txid}: "
                                 f"have {record.validity.name}, got {validity.name}")
            return txid
        record.set_validity(validity)
        return txid

    async def get_token_information(self, txid: str, *, decimal_conversion: bool = False) -> Dict[str, Any]:
        """Decoded SLP message of txid as a dict.

        With decimal_conversion, quantities are returned as Decimal scaled by
        the token's decimals (fetched from the GENESIS tx if needed).
        """
        txid = self._normalize_txid(txid)
        record = await self._get_record_with_tx(txid)
        message = self._decode(record)
        if message is None:
            raise record.decode_error
        info = message.to_json()
        info['txid'] = txid
        info['token_id_hex'] = record.token_id_hex
        if not decimal_conversion:
            return info

        if message.transaction_type == TransactionType.GENESIS:
            decimals = message.decimals
        else:
            genesis_record = await self._get_record_with_tx(record.token_id_hex)
            genesis = self._decode(genesis_record)
            if genesis is None:
                raise genesis_record.decode_error
            if genesis.transaction_type != TransactionType.GENESIS:
                raise MalformedMessage(f"token id {record.token_id_hex} is not a GENESIS transaction")
            decimals = genesis.decimals
        info['decimals'] = decimals
        if 'genesis_or_mint_quantity' in info:
            info['genesis_or_mint_quantity'] = _to_decimal(info['genesis_or_mint_quantity'], decimals)
        if 'send_outputs' in info:
            info['send_outputs'] = [_to_decimal(q, decimals) for q in info['send_outputs']]
        return info

    # --- fetching

    @staticmethod
    def _normalize_txid(txid: str) -> str:
        if not is_hash256_str(txid):
            raise ValueError(f"not a txid: {txid!r}")
        return txid.lower()

    async def _get_record_with_tx(self, txid: str) -> ValidationRecord:
        if not await self._fetch_transaction(txid):
            raise TransactionNotFound(txid)
        return self.cache.get(txid)

    async def _fetch_transaction(self, txid: str) -> bool:
        """Makes sure the raw tx is in the cache. Returns False if the fetch
        capability reports it as not existing."""
        record = self.cache.get_or_create(txid)
        if record.raw is not None:
            return True
        if record.missing:
            return False
        task = self._fetch_tasks.get(txid)
        if task is None or task.done():
            task = asyncio.create_task(self._fetch_raw(txid))
            self._fetch_tasks[txid] = task
            task.add_done_callback(functools.partial(self._on_fetch_done, txid))
        await asyncio.shield(task)
        return record.raw is not None

    async def _fetch_raw(self, txid: str) -> None:
        record = self.cache.get_or_create(txid)
        if self._fetch_sem is None:
            # must be created inside the running event loop
            self._fetch_sem = asyncio.Semaphore(self._max_concurrent_fetches)
        try:
            async with self._fetch_sem:
                results = await self._get_raw_transactions([txid])
        except TransactionNotFound:
            self.logger.info(f"transaction not found: {txid}")
            record.missing = True
            return
        for item in results or ():
            raw = _raw_from_fetch_item(item)
            other = self.cache.get_or_create(txid_from_raw(raw))
            if other.raw is None:
                other.raw = raw
                other.missing = False
        if record.raw is None:
            self.logger.info(f"transaction not returned by fetch capability: {txid}")
            record.missing = True

    def _on_fetch_done(self, txid: str, task: asyncio.Task) -> None:
        if self._fetch_tasks.get(txid) is task:
            del self._fetch_tasks[txid]
        if not task.cancelled() and task.exception() is not None:
            self.logger.info(f"fetching {txid} failed: {task.exception()!r}")

    # --- validation

    def _on_validation_done(self, txid: str, task: asyncio.Task) -> None:
        if self._validation_tasks.get(txid) is task:
            del self._validation_tasks[txid]
        if not task.cancelled() and task.exception() is not None:
            self.logger.info(f"validation of {txid} aborted: {task.exception()!r}")

    def _decode(self, record: ValidationRecord) -> Optional[TokenMessage]:
        """Decodes the SLP message of a fetched tx, once per record.
        Returns None if it carries no valid SLP message."""
        if record.decoded:
            return record.message
        try:
            tx = record.transaction()
            message = Message.parse(tx.outputs()[0].scriptpubkey)
        except (ParsingError, SerializationError) as e:
            record.decode_error = e
            message = None
        else:
            record.message = message
            if message.transaction_type == TransactionType.GENESIS:
                record.token_id_hex = record.txid
            else:
                record.token_id_hex = message.token_id_hex
        record.decoded = True
        return message

    def _finish(self, record: ValidationRecord, validity: Validity,
                reason: InvalidReason = None) -> Validity:
        if record.is_decided():
            # preloaded via add_validation_from_store while we were running
            return record.validity
        record.set_validity(validity, reason)
        if reason is None:
            self.logger.debug(f"{record.txid} {validity.name}")
        else:
            self.logger.debug(f"{record.txid} {validity.name} ({reason.value})")
        return validity

    async def _validate(self, txid: str) -> Validity:
        record = self.cache.get_or_create(txid)
        if record.is_decided():
            return record.validity
        if not await self._fetch_transaction(txid):
            return self._finish(record, Validity.INVALID, InvalidReason.MISSING_ANCESTOR)

        message = self._decode(record)
        if message is None:
            if isinstance(record.decode_error, NotProtocolMessage):
                reason = InvalidReason.NOT_PROTOCOL_MESSAGE
            else:
                reason = InvalidReason.MALFORMED_MESSAGE
            return self._finish(record, Validity.INVALID, reason)

        if message.transaction_type == TransactionType.GENESIS:
            return self._finish(record, Validity.VALID)

        tx = record.transaction()
        # unfetchable inputs only matter when the tokens they might carry are needed
        inputs_missing = not await self._fetch_inputs(tx)

        if message.transaction_type == TransactionType.MINT:
            batons = [prev.txid for prev, out_idx in self._token_inputs(record, tx)
                      if prev.message.transaction_type in (TransactionType.GENESIS, TransactionType.MINT)
                      and prev.message.is_baton_output(out_idx)]
            if not batons and inputs_missing:
                return self._finish(record, Validity.INVALID, InvalidReason.MISSING_ANCESTOR)
            if len(batons) != 1:
                return self._finish(record, Validity.INVALID, InvalidReason.INVALID_MINT_AUTHORITY)
            record.parents.add(batons[0])
        else:
            input_total = 0
            for prev, out_idx in self._token_inputs(record, tx):
                # GENESIS/MINT only carry value on output 1, batons carry none
                quantity = prev.message.quantity_for_output(out_idx)
                if quantity is None:
                    continue
                input_total += quantity
                record.parents.add(prev.txid)
            output_total = message.total_output_quantity()
            if output_total > input_total and inputs_missing:
                return self._finish(record, Validity.INVALID, InvalidReason.MISSING_ANCESTOR)
            if output_total > input_total:
                self.logger.info(f"{txid} outputs {output_total} tokens but only {input_total} are input")
                return self._finish(record, Validity.INVALID, InvalidReason.INFLATION)

        if not await self._validate_parents(record):
            return self._finish(record, Validity.INVALID, InvalidReason.INVALID_PARENT)
        return self._finish(record, Validity.VALID)

    async def _fetch_inputs(self, tx: Transaction) -> bool:
        """Fetches all input txs. Returns False if any of them does not exist."""
        prev_txids = [prev_txid for prev_txid in tx.input_txids() if prev_txid != NULL_TXID]
        async with OldTaskGroup() as group:
            tasks = [await group.spawn(self._fetch_transaction(prev_txid)) for prev_txid in prev_txids]
        return all(task.result() for task in tasks)

    def _token_inputs(self, record: ValidationRecord, tx: Transaction):
        """Yields (ancestor record, spent output index) for inputs spending an
        output of a tx with a valid SLP message of the same token."""
        for txin in tx.inputs():
            if txin.is_coinbase_input():
                continue
            prev = self.cache.get(txin.prevout_txid)
            if prev is None or prev.raw is None:
                continue
            if self._decode(prev) is None:
                continue
            if prev.token_id_hex != record.token_id_hex:
                continue
            yield prev, txin.prevout.out_idx

    async def _validate_parents(self, record: ValidationRecord) -> bool:
        parents = sorted(record.parents)
        async with OldTaskGroup() as group:
            tasks = [await group.spawn(self.is_valid(parent)) for parent in parents]
        return all(task.result() for task in tasks)


def _to_decimal(quantity: int, decimals: int) -> Decimal:
    # string construction is exact regardless of the context precision
    return Decimal(f"{quantity}e-{decimals}")
