import asyncio
import functools
from decimal import Decimal
from unittest import mock

from slpvalidator.crypto import txid_from_raw
from slpvalidator.simple_config import SimpleConfig
from slpvalidator.slp.exceptions import TransactionNotFound, NotProtocolMessage
from slpvalidator.slp.message import Message, GenesisMessage, MintMessage, SendMessage, encode
from slpvalidator.slp.validation import LocalValidator, Validity, InvalidReason

from . import SLPTestCase, make_tx, fake_txid


class FakeNode:
    """In-memory fetch capability."""

    def __init__(self):
        self.txs = {}  # txid -> raw
        self.requested = []  # every requested txid, in order
        self.unreachable = set()
        self.gate = None  # type: asyncio.Event
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, tx) -> str:
        self.txs[tx.txid()] = tx.serialize_as_bytes()
        return tx.txid()

    def request_count(self, txid: str) -> int:
        return self.requested.count(txid)

    async def get_raw_transactions(self, txids):
        self.requested.extend(txids)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0.001)
            for txid in txids:
                if txid in self.unreachable:
                    raise ConnectionError(f"cannot reach node for {txid}")
                if txid not in self.txs:
                    raise TransactionNotFound(txid)
            return [(txid, self.txs[txid]) for txid in txids]
        finally:
            self.in_flight -= 1


class TestLocalValidator(SLPTestCase):

    def setUp(self):
        super().setUp()
        self.node = FakeNode()
        self.genesis = make_tx([(fake_txid("funding"), 0)], encode(GenesisMessage(
            ticker="TST", token_name="Test Token", decimals=2, mint_baton_vout=2,
            initial_token_mint_quantity=100)))
        self.token_id = self.node.add(self.genesis)

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.validator = LocalValidator(self.node.get_raw_transactions)

    def send(self, spends, outputs, *, token_id=None) -> str:
        msg = SendMessage(token_id_hex=token_id or self.token_id, token_output=outputs)
        return self.node.add(make_tx(spends, encode(msg)))

    def mint(self, spends, quantity, *, baton_vout=2, token_id=None) -> str:
        msg = MintMessage(token_id_hex=token_id or self.token_id, mint_baton_vout=baton_vout,
                          additional_token_quantity=quantity)
        return self.node.add(make_tx(spends, encode(msg)))

    def other_genesis(self, label="other") -> str:
        tx = make_tx([(fake_txid(label), 0)], encode(GenesisMessage(
            ticker="OTH", mint_baton_vout=2, initial_token_mint_quantity=1000)))
        return self.node.add(tx)

    async def assert_invalid(self, txid, reason):
        self.assertFalse(await self.validator.is_valid(txid))
        self.assertEqual(reason, self.validator.get_invalid_reason(txid))
        self.assertEqual(Validity.INVALID, self.validator.cache.validity(txid))

    # --- GENESIS

    async def test_genesis_is_valid(self):
        self.assertTrue(await self.validator.is_valid(self.token_id))
        # inputs of a GENESIS are never looked at
        self.assertEqual([self.token_id], self.node.requested)
        record = self.validator.cache.get(self.token_id)
        self.assertEqual(self.token_id, record.token_id_hex)
        self.assertIsNone(self.validator.get_invalid_reason(self.token_id))

    async def test_txid_is_case_insensitive(self):
        self.assertTrue(await self.validator.is_valid(self.token_id.upper()))

    async def test_bad_txid_raises(self):
        with self.assertRaises(ValueError):
            await self.validator.is_valid("not a txid")

    # --- SEND

    async def test_send_balanced(self):
        txid = self.send([(self.token_id, 1)], [60, 40])
        self.assertTrue(await self.validator.is_valid(txid))
        self.assertEqual({self.token_id}, self.validator.cache.get(txid).parents)

    async def test_send_inflation(self):
        txid = self.send([(self.token_id, 1)], [60, 41])
        await self.assert_invalid(txid, InvalidReason.INFLATION)

    async def test_send_single_output_inflation(self):
        self.assertTrue(await self.validator.is_valid(self.send([(self.token_id, 1)], [100])))
        await self.assert_invalid(self.send([(self.token_id, 1)], [101]), InvalidReason.INFLATION)

    async def test_send_burn_is_valid(self):
        txid = self.send([(self.token_id, 1)], [50])
        self.assertTrue(await self.validator.is_valid(txid))

    async def test_send_from_baton_carries_no_value(self):
        txid = self.send([(self.token_id, 2)], [1])
        await self.assert_invalid(txid, InvalidReason.INFLATION)
        self.assertEqual(set(), self.validator.cache.get(txid).parents)

    async def test_send_ignores_baton_input(self):
        txid = self.send([(self.token_id, 1), (self.token_id, 2)], [100])
        self.assertTrue(await self.validator.is_valid(txid))
        self.assertEqual({self.token_id}, self.validator.cache.get(txid).parents)

    async def test_send_other_token_not_counted(self):
        other = self.other_genesis()
        txid = self.send([(other, 1)], [10])
        await self.assert_invalid(txid, InvalidReason.INFLATION)

    async def test_send_non_slp_input_ignored(self):
        plain = self.node.add(make_tx([(fake_txid("plain"), 0)], None))
        txid = self.send([(plain, 0), (self.token_id, 1)], [100])
        self.assertTrue(await self.validator.is_valid(txid))
        self.assertEqual({self.token_id}, self.validator.cache.get(txid).parents)

    async def test_send_chain(self):
        s1 = self.send([(self.token_id, 1)], [60, 40])
        s2 = self.send([(s1, 2)], [40])
        s3 = self.send([(s1, 2)], [41])
        self.assertTrue(await self.validator.is_valid(s2))
        self.assertEqual(Validity.VALID, self.validator.cache.validity(s1))
        await self.assert_invalid(s3, InvalidReason.INFLATION)

    async def test_send_spending_undeclared_output(self):
        s1 = self.send([(self.token_id, 1)], [60])
        s2 = self.send([(s1, 2)], [1])
        await self.assert_invalid(s2, InvalidReason.INFLATION)

    async def test_send_summing_several_inputs(self):
        s1 = self.send([(self.token_id, 1)], [30, 70])
        s2 = self.send([(s1, 1), (s1, 2)], [100])
        self.assertTrue(await self.validator.is_valid(s2))
        self.assertEqual({s1}, self.validator.cache.get(s2).parents)

    # --- MINT

    async def test_mint_with_baton(self):
        m = self.mint([(self.token_id, 2)], 50)
        self.assertTrue(await self.validator.is_valid(m))
        self.assertEqual({self.token_id}, self.validator.cache.get(m).parents)

    async def test_mint_without_baton(self):
        m = self.mint([(self.token_id, 1)], 50)
        await self.assert_invalid(m, InvalidReason.INVALID_MINT_AUTHORITY)

    async def test_mint_baton_at_wrong_index(self):
        m = self.mint([(self.token_id, 3)], 50)
        await self.assert_invalid(m, InvalidReason.INVALID_MINT_AUTHORITY)

    async def test_mint_with_two_batons(self):
        m1 = self.mint([(self.token_id, 2)], 50)
        m2 = self.mint([(self.token_id, 2), (m1, 2)], 10)
        await self.assert_invalid(m2, InvalidReason.INVALID_MINT_AUTHORITY)

    async def test_mint_with_baton_of_other_token(self):
        other = self.other_genesis()
        m = self.mint([(other, 2)], 50)
        await self.assert_invalid(m, InvalidReason.INVALID_MINT_AUTHORITY)

    async def test_mint_chain_then_send(self):
        m1 = self.mint([(self.token_id, 2)], 50)
        m2 = self.mint([(m1, 2)], 10, baton_vout=None)
        s = self.send([(m1, 1), (m2, 1)], [60])
        self.assertTrue(await self.validator.is_valid(s))
        self.assertEqual({m1, m2}, self.validator.cache.get(s).parents)
        # baton was not passed on by m2
        m3 = self.mint([(m2, 2)], 1)
        await self.assert_invalid(m3, InvalidReason.INVALID_MINT_AUTHORITY)

    # --- parents

    async def test_invalid_parent_propagates_to_send(self):
        bad = self.send([(self.token_id, 1)], [60, 41])
        child = self.send([(bad, 1)], [60])
        await self.assert_invalid(child, InvalidReason.INVALID_PARENT)
        self.assertEqual(InvalidReason.INFLATION, self.validator.get_invalid_reason(bad))

    async def test_invalid_parent_propagates_to_mint(self):
        bad = self.mint([(self.token_id, 1)], 5)
        child = self.mint([(bad, 2)], 5)
        await self.assert_invalid(child, InvalidReason.INVALID_PARENT)
        self.assertEqual(InvalidReason.INVALID_MINT_AUTHORITY, self.validator.get_invalid_reason(bad))

    async def test_deep_ancestry(self):
        txid = self.token_id
        chain = []
        for i in range(300):
            txid = self.send([(txid, 1)], [100])
            chain.append(txid)
        self.assertTrue(await self.validator.is_valid(txid))
        for txid in chain:
            self.assertEqual(Validity.VALID, self.validator.cache.validity(txid))

    # --- decoding failures

    async def test_not_protocol_message(self):
        plain = self.node.add(make_tx([(fake_txid("plain"), 0)], None))
        await self.assert_invalid(plain, InvalidReason.NOT_PROTOCOL_MESSAGE)

    async def test_malformed_message(self):
        txid = self.node.add(make_tx([(fake_txid("x"), 0)], bytes.fromhex("6a04534c5000")))
        await self.assert_invalid(txid, InvalidReason.MALFORMED_MESSAGE)
        self.assertIsNotNone(self.validator.cache.get(txid).decode_error)

    async def test_undeserializable_tx(self):
        raw = b'\x01\x02\x03'
        txid = txid_from_raw(raw)
        self.node.txs[txid] = raw
        await self.assert_invalid(txid, InvalidReason.MALFORMED_MESSAGE)

    # --- missing ancestors

    async def test_missing_ancestor_is_memoized(self):
        missing = fake_txid("nowhere")
        txid = self.send([(missing, 1), (self.token_id, 1)], [150])
        await self.assert_invalid(txid, InvalidReason.MISSING_ANCESTOR)
        n_requests = len(self.node.requested)
        await self.assert_invalid(txid, InvalidReason.MISSING_ANCESTOR)
        await self.assert_invalid(missing, InvalidReason.MISSING_ANCESTOR)
        self.assertEqual(n_requests, len(self.node.requested))
        self.assertEqual(1, self.node.request_count(missing))

    async def test_send_with_unknown_fee_input_is_valid(self):
        fee = fake_txid("fee")
        txid = self.send([(self.token_id, 1), (fee, 0)], [100])
        self.assertTrue(await self.validator.is_valid(txid))
        self.assertEqual({self.token_id}, self.validator.cache.get(txid).parents)
        self.assertTrue(self.validator.cache.get(fee).missing)
        self.assertEqual(1, self.node.request_count(fee))

    async def test_send_burn_with_unknown_input_is_valid(self):
        txid = self.send([(fake_txid("fee"), 0), (self.token_id, 1)], [30])
        self.assertTrue(await self.validator.is_valid(txid))

    async def test_send_uncovered_with_unknown_input_is_missing_ancestor(self):
        txid = self.send([(self.token_id, 1), (fake_txid("fee"), 0)], [101])
        await self.assert_invalid(txid, InvalidReason.MISSING_ANCESTOR)

    async def test_mint_with_unknown_fee_input_is_valid(self):
        m = self.mint([(fake_txid("fee"), 0), (self.token_id, 2)], 50)
        self.assertTrue(await self.validator.is_valid(m))
        self.assertEqual({self.token_id}, self.validator.cache.get(m).parents)

    async def test_mint_without_baton_and_unknown_input_is_missing_ancestor(self):
        m = self.mint([(self.token_id, 1), (fake_txid("fee"), 0)], 50)
        await self.assert_invalid(m, InvalidReason.MISSING_ANCESTOR)

    async def test_unknown_txid(self):
        await self.assert_invalid(fake_txid("unknown"), InvalidReason.MISSING_ANCESTOR)

    # --- concurrency

    async def test_concurrent_calls_share_one_computation(self):
        txid = self.send([(self.token_id, 1)], [100])
        with mock.patch.object(Message, 'parse', wraps=Message.parse) as parse:
            r1, r2 = await asyncio.gather(self.validator.is_valid(txid), self.validator.is_valid(txid))
        self.assertTrue(r1)
        self.assertTrue(r2)
        self.assertEqual(1, self.node.request_count(txid))
        self.assertEqual(1, self.node.request_count(self.token_id))
        # one decode for the SEND, one for its GENESIS input
        self.assertEqual(2, parse.call_count)

    async def test_shared_ancestor_fetched_once(self):
        s1 = self.send([(self.token_id, 1)], [60, 40])
        a = self.send([(s1, 1)], [60])
        b = self.send([(s1, 2)], [40])
        results = await asyncio.gather(self.validator.is_valid(a), self.validator.is_valid(b))
        self.assertEqual([True, True], results)
        self.assertEqual(1, self.node.request_count(s1))
        self.assertEqual(1, self.node.request_count(self.token_id))

    async def test_abandoned_caller_does_not_cancel_shared_work(self):
        txid = self.send([(self.token_id, 1)], [100])
        self.node.gate = asyncio.Event()
        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(self.validator.is_valid(txid), timeout=0.05)
        self.node.gate.set()
        self.assertTrue(await self.validator.is_valid(txid))
        self.assertEqual(1, self.node.request_count(txid))

    async def test_fetch_fault_is_not_memoized(self):
        txid = self.send([(self.token_id, 1)], [100])
        self.node.unreachable.add(self.token_id)
        with self.assertRaises(ConnectionError):
            await self.validator.is_valid(txid)
        self.assertEqual(Validity.UNKNOWN, self.validator.cache.validity(txid))
        self.assertIsNone(self.validator.get_invalid_reason(txid))
        genesis_record = self.validator.cache.get(self.token_id)
        self.assertIsNone(genesis_record.raw)
        self.assertFalse(genesis_record.missing)
        # node is back
        self.node.unreachable.clear()
        self.assertTrue(await self.validator.is_valid(txid))

    async def test_max_concurrent_fetches_from_config(self):
        config = SimpleConfig({'slp_max_concurrent_fetches': 1, 'datadir': self.slpvalidator_path})
        validator = LocalValidator(self.node.get_raw_transactions, config=config)
        other1 = self.other_genesis("a")
        other2 = self.other_genesis("b")
        txid = self.send([(other1, 1), (other2, 1), (self.token_id, 1)], [100])
        self.assertTrue(await validator.is_valid(txid))
        self.assertEqual(1, self.node.max_in_flight)

    async def test_constructed_outside_event_loop(self):
        loop = asyncio.get_running_loop()
        # a worker thread has no event loop of its own
        validator = await loop.run_in_executor(
            None, functools.partial(LocalValidator, self.node.get_raw_transactions, max_concurrent_fetches=1))
        other = self.other_genesis()
        txid = self.send([(other, 1), (self.token_id, 1)], [100])
        self.assertTrue(await validator.is_valid(txid))
        self.assertEqual(1, self.node.max_in_flight)

    # --- fetch capability result shapes

    async def test_fetch_returning_hex_and_extra_transactions(self):
        txid = self.send([(self.token_id, 1)], [100])
        raw_send = self.node.txs[txid]
        raw_genesis = self.node.txs[self.token_id]
        calls = []

        async def fetch(txids):
            calls.append(list(txids))
            return [raw_send.hex(), raw_genesis]

        validator = LocalValidator(fetch)
        self.assertTrue(await validator.is_valid(txid))
        self.assertEqual([[txid]], calls)

    async def test_fetch_omitting_requested_tx(self):
        async def fetch(txids):
            return []

        validator = LocalValidator(fetch)
        self.assertFalse(await validator.is_valid(self.token_id))
        self.assertEqual(InvalidReason.MISSING_ANCESTOR, validator.get_invalid_reason(self.token_id))

    # --- stored verdicts

    async def test_preloaded_ancestor_is_not_fetched(self):
        txid = self.send([(self.token_id, 1)], [100])
        self.assertEqual(self.token_id,
                         self.validator.add_validation_from_store(self.genesis.serialize_as_bytes(), True))
        del self.node.txs[self.token_id]
        self.assertTrue(await self.validator.is_valid(txid))
        self.assertEqual(0, self.node.request_count(self.token_id))

    async def test_preloaded_invalid_ancestor(self):
        txid = self.send([(self.token_id, 1)], [100])
        self.validator.add_validation_from_store(self.genesis.serialize(), False)
        await self.assert_invalid(txid, InvalidReason.INVALID_PARENT)

    async def test_preload_conflicting_verdict(self):
        self.assertTrue(await self.validator.is_valid(self.token_id))
        raw = self.genesis.serialize_as_bytes()
        self.assertEqual(self.token_id, self.validator.add_validation_from_store(raw, True))
        with self.assertRaises(ValueError):
            self.validator.add_validation_from_store(raw, False)

    # --- batch and token information

    async def test_validate_transactions(self):
        good = self.send([(self.token_id, 1)], [60, 40])
        bad = self.send([(self.token_id, 1)], [60, 41])
        valid = await self.validator.validate_transactions([good, bad, self.token_id])
        self.assertEqual([good, self.token_id], valid)

    async def test_get_token_information(self):
        txid = self.send([(self.token_id, 1)], [60, 40])
        info = await self.validator.get_token_information(txid)
        self.assertEqual('SEND', info['transaction_type'])
        self.assertEqual(self.token_id, info['token_id_hex'])
        self.assertEqual([60, 40], info['send_outputs'])

        info = await self.validator.get_token_information(txid, decimal_conversion=True)
        self.assertEqual(2, info['decimals'])
        self.assertEqual([Decimal('0.60'), Decimal('0.40')], info['send_outputs'])

        info = await self.validator.get_token_information(self.token_id, decimal_conversion=True)
        self.assertEqual('TST', info['ticker'])
        self.assertEqual('Test Token', info['token_name'])
        self.assertEqual(Decimal('1.00'), info['genesis_or_mint_quantity'])

    async def test_get_token_information_mint(self):
        m = self.mint([(self.token_id, 2)], 12345)
        info = await self.validator.get_token_information(m, decimal_conversion=True)
        self.assertEqual('MINT', info['transaction_type'])
        self.assertEqual(Decimal('123.45'), info['genesis_or_mint_quantity'])

    async def test_get_token_information_errors(self):
        plain = self.node.add(make_tx([(fake_txid("plain"), 0)], None))
        with self.assertRaises(NotProtocolMessage):
            await self.validator.get_token_information(plain)
        with self.assertRaises(TransactionNotFound):
            await self.validator.get_token_information(fake_txid("unknown"))
