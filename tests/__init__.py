import asyncio
import os
import unittest
import threading
import tempfile
import shutil
from typing import Optional, Sequence, Tuple

import slpvalidator
import slpvalidator.logging
from slpvalidator.bitcoin import p2pkh_script
from slpvalidator.crypto import sha256
from slpvalidator.logging import Logger
from slpvalidator.transaction import Transaction, TxInput, TxOutpoint, TxOutput


slpvalidator.logging._configure_stderr_logging(verbosity="*")


class SLPTestCase(unittest.IsolatedAsyncioTestCase, Logger):
    """Base class for our unit tests."""

    # maxDiff = None  # for debugging

    # some unit tests are modifying globals... so we run sequentially:
    _test_lock = threading.Lock()

    def __init__(self, *args, **kwargs):
        Logger.__init__(self)
        unittest.IsolatedAsyncioTestCase.__init__(self, *args, **kwargs)

    def setUp(self):
        have_lock = self._test_lock.acquire(timeout=0.1)
        if not have_lock:
            # This can happen when trying to run the tests in parallel,
            # or if a prior test raised  during `setUp` or `asyncSetUp` and never released the lock.
            raise Exception("timed out waiting for test_lock")
        super().setUp()
        self.slpvalidator_path = tempfile.mkdtemp(prefix="slpvalidator-unittest-base-")

    async def asyncSetUp(self):
        await super().asyncSetUp()
        loop = asyncio.get_running_loop()
        # IsolatedAsyncioTestCase creates event loops with debug=True, which makes the tests take ~4x time
        if not (os.environ.get("PYTHONASYNCIODEBUG") or os.environ.get("PYTHONDEVMODE")):
            loop.set_debug(False)

    def tearDown(self):
        shutil.rmtree(self.slpvalidator_path)
        super().tearDown()
        self._test_lock.release()


DUMMY_SCRIPTPUBKEY = p2pkh_script(bytes(20))


def fake_txid(label: str) -> str:
    """A txid-looking hash for a tx nobody has."""
    return sha256(label).hex()


def make_tx(spends: Sequence[Tuple[str, int]], op_return: Optional[bytes] = None, *,
            n_outputs: int = 3) -> Transaction:
    """Unsigned tx spending the given outpoints. The OP_RETURN (if any) is
    output 0, followed by n_outputs dust p2pkh outputs."""
    inputs = [TxInput(prevout=TxOutpoint(txid=bytes.fromhex(txid), out_idx=out_idx))
              for txid, out_idx in spends]
    outputs = []
    if op_return is not None:
        outputs.append(TxOutput(scriptpubkey=op_return, value=0))
    outputs += [TxOutput(scriptpubkey=DUMMY_SCRIPTPUBKEY, value=546) for _ in range(n_outputs)]
    return Transaction.from_io(inputs, outputs)
