from typing import Iterable, List, Optional, TYPE_CHECKING

import aiohttp

from ..logging import Logger
from ..util import JsonRPCClient, OldTaskGroup, make_aiohttp_session
from .validation import Validator

if TYPE_CHECKING:
    from ..simple_config import SimpleConfig


class ProxyValidator(Validator, Logger):
    """Delegates validation to a remote slpvalidate JSON-RPC service.

    Nothing is cached; HTTP and JSON-RPC errors propagate to the caller.
    """

    LOGGING_SHORTCUT = 'P'

    def __init__(self, config: 'SimpleConfig', *, url: str = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.url = url or config.SLP_PROXY_VALIDATOR_URL
        self.session = session
        Logger.__init__(self)

    def diagnostic_name(self):
        return self.url

    def _make_session(self) -> aiohttp.ClientSession:
        return make_aiohttp_session(proxy=self.config.get_proxy(),
                                    timeout=self.config.get_network_timeout_seconds())

    async def _request_validity(self, session: aiohttp.ClientSession, txid: str) -> bool:
        client = JsonRPCClient(session, self.url, request_id='slpvalidate')
        result = await client.request('slpvalidate', txid, False, False)
        self.logger.debug(f"{txid}: {result}")
        return result == 'Valid'

    async def is_valid(self, txid: str) -> bool:
        if self.session is not None:
            return await self._request_validity(self.session, txid)
        async with self._make_session() as session:
            return await self._request_validity(session, txid)

    async def validate_transactions(self, txids: Iterable[str]) -> List[str]:
        txids = list(txids)
        if not txids:
            return []
        if self.session is not None:
            return await self._validate_all(self.session, txids)
        async with self._make_session() as session:
            return await self._validate_all(session, txids)

    async def _validate_all(self, session: aiohttp.ClientSession, txids: List[str]) -> List[str]:
        async with OldTaskGroup() as group:
            tasks = [await group.spawn(self._request_validity(session, txid)) for txid in txids]
        return [txid for txid, task in zip(txids, tasks) if task.result()]
