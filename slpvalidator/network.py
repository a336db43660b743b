# Electrum - lightweight Bitcoin client
# Copyright (c) 2011-2016 Thomas Voegtlin
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
import asyncio
import itertools
import logging
import ssl
from typing import List, Optional, Sequence, Tuple, Union, TYPE_CHECKING

import aiorpcx
from aiorpcx import RPCSession, NetAddress
from aiorpcx.curio import TaskTimeout
from aiorpcx.jsonrpc import CodeMessageError, RPCError
from aiorpcx.rawsocket import RSClient

from . import util
from .logging import Logger
from .slp.exceptions import TransactionNotFound
from .transaction import Transaction
from .util import OldTaskGroup, bfh, is_hash256_str, is_hex_str
from .version import SLPVALIDATOR_VERSION, PROTOCOL_VERSION

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


_KNOWN_NETWORK_PROTOCOLS = {'t', 's'}
PREFERRED_NETWORK_PROTOCOL = 's'


class NetworkException(Exception): pass


class GracefulDisconnect(NetworkException):
    log_level = logging.INFO

    def __init__(self, *args, log_level=None, **kwargs):
        Exception.__init__(self, *args, **kwargs)
        if log_level is not None:
            self.log_level = log_level


class RequestTimedOut(GracefulDisconnect):
    def __str__(self):
        return "Network request timed out."


class RequestCorrupted(Exception): pass
class ConnectError(NetworkException): pass


class _RSClient(RSClient):
    async def create_connection(self):
        try:
            return await super().create_connection()
        except OSError as e:
            # note: using "from e" here will set __cause__ of ConnectError
            raise ConnectError(e) from e


class FetcherSession(RPCSession):

    def __init__(self, *args, fetcher: 'ElectrumXFetcher', **kwargs):
        super().__init__(*args, **kwargs)
        self._msg_counter = itertools.count(start=1)
        self.fetcher = fetcher
        self.cost_hard_limit = 0  # disable aiorpcx resource limits

    async def handle_request(self, request):
        # we never subscribe to anything
        self.fetcher.logger.info(f"unexpected request from server: {request}")
        await self.close()

    async def send_request(self, *args, timeout=None, **kwargs):
        msg_id = next(self._msg_counter)
        self.fetcher.logger.debug(f"<-- {args} {kwargs} (id: {msg_id})")
        try:
            # note: RPCSession.send_request raises TaskTimeout in case of a timeout.
            # TaskTimeout is a subclass of CancelledError, which is *suppressed* in TaskGroups
            response = await util.wait_for2(
                super().send_request(*args, **kwargs),
                timeout)
        except (TaskTimeout, asyncio.TimeoutError) as e:
            raise RequestTimedOut(f'request timed out: {args} (id: {msg_id})') from e
        except CodeMessageError as e:
            self.fetcher.logger.debug(f"--> {repr(e)} (id: {msg_id})")
            raise
        else:
            self.fetcher.logger.debug(f"--> {response} (id: {msg_id})")
            return response

    def set_default_timeout(self, timeout):
        assert hasattr(self, "sent_request_timeout")  # in base class
        self.sent_request_timeout = timeout
        assert hasattr(self, "max_send_delay")        # in base class
        self.max_send_delay = timeout


class ServerAddr:

    def __init__(self, host: str, port: Union[int, str], *, protocol: str = None):
        assert isinstance(host, str), repr(host)
        if protocol is None:
            protocol = PREFERRED_NETWORK_PROTOCOL
        if not host:
            raise ValueError('host must not be empty')
        if host[0] == '[' and host[-1] == ']':  # IPv6
            host = host[1:-1]
        try:
            net_addr = NetAddress(host, port)  # this validates host and port
        except Exception as e:
            raise ValueError(f"cannot construct ServerAddr: invalid host or port (host={host}, port={port})") from e
        if protocol not in _KNOWN_NETWORK_PROTOCOLS:
            raise ValueError(f"invalid network protocol: {protocol}")
        self.host = str(net_addr.host)  # canonical form (if e.g. IPv6 address)
        self.port = int(net_addr.port)
        self.protocol = protocol
        self._net_addr_str = str(net_addr)

    @classmethod
    def from_str(cls, s: str) -> 'ServerAddr':
        """Constructs a ServerAddr or raises ValueError."""
        # host might be IPv6 address, hence do rsplit:
        host, port, protocol = str(s).rsplit(':', 2)
        return ServerAddr(host=host, port=port, protocol=protocol)

    def __str__(self):
        return '{}:{}'.format(self.net_addr_str(), self.protocol)

    def __repr__(self):
        return f'<ServerAddr host={self.host} port={self.port} protocol={self.protocol}>'

    def net_addr_str(self) -> str:
        return self._net_addr_str

    def __eq__(self, other):
        if not isinstance(other, ServerAddr):
            return False
        return (self.host == other.host
                and self.port == other.port
                and self.protocol == other.protocol)

    def __hash__(self):
        return hash((self.host, self.port, self.protocol))


def _make_socks_proxy(proxy: Optional[dict]) -> Optional[aiorpcx.SOCKSProxy]:
    if not proxy:
        return None
    protocol = aiorpcx.SOCKS5 if proxy['mode'] == 'socks5' else aiorpcx.SOCKS4a
    auth = None
    if proxy.get('user'):
        auth = aiorpcx.SOCKSUserAuth(proxy['user'], proxy.get('password', ''))
    return aiorpcx.SOCKSProxy((proxy['host'], int(proxy['port'])), protocol, auth)


class ElectrumXFetcher(Logger):
    """Fetch capability backed by an ElectrumX (or compatible) server.

    Use as an async context manager; pass get_raw_transactions to a
    LocalValidator:

        async with ElectrumXFetcher(config=config) as fetcher:
            validator = LocalValidator(fetcher.get_raw_transactions, config=config)
    """

    LOGGING_SHORTCUT = 'f'

    def __init__(self, server: Union[ServerAddr, str, None] = None, *, config: 'SimpleConfig'):
        self.config = config
        if server is None:
            server = config.NETWORK_SERVER
            if not server:
                raise ValueError("no server given and none configured")
        if isinstance(server, str):
            server = ServerAddr.from_str(server)
        self.server = server
        self.session = None  # type: Optional[FetcherSession]
        self._client = None  # type: Optional[_RSClient]
        Logger.__init__(self)

    def diagnostic_name(self):
        return self.server.net_addr_str()

    def client_name(self) -> str:
        return f'slpvalidator/{SLPVALIDATOR_VERSION}'

    def _get_ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.server.protocol != 's':
            return None
        return ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH, cafile=util.ca_path)

    async def __aenter__(self) -> 'ElectrumXFetcher':
        session_factory = lambda *args, fetcher=self, **kwargs: FetcherSession(*args, **kwargs, fetcher=fetcher)
        self._client = _RSClient(session_factory=session_factory,
                                 host=self.server.host, port=self.server.port,
                                 ssl=self._get_ssl_context(),
                                 proxy=_make_socks_proxy(self.config.get_proxy()))
        session = await self._client.__aenter__()
        try:
            session.set_default_timeout(self.config.get_network_timeout_seconds())
            try:
                ver = await session.send_request('server.version', [self.client_name(), PROTOCOL_VERSION])
            except RPCError as e:
                raise GracefulDisconnect(e)  # probably 'unsupported protocol version'
            if ver[1] != PROTOCOL_VERSION:
                raise GracefulDisconnect(f'server violated protocol-version-negotiation. '
                                         f'we asked for {PROTOCOL_VERSION!r}, they sent {ver[1]!r}')
        except BaseException:
            await self._client.__aexit__(None, None, None)
            self._client = None
            raise
        self.session = session
        self.logger.info(f"connection established. version: {ver}")
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        client, self._client, self.session = self._client, None, None
        if client is not None:
            await client.__aexit__(exc_type, exc_value, traceback)

    async def get_transaction(self, tx_hash: str, *, timeout=None) -> bytes:
        if self.session is None:
            raise NetworkException("not connected")
        if not is_hash256_str(tx_hash):
            raise Exception(f"{repr(tx_hash)} is not a txid")
        tx_hash = tx_hash.lower()
        try:
            raw = await self.session.send_request('blockchain.transaction.get', [tx_hash], timeout=timeout)
        except RPCError as e:
            if 'no such mempool or blockchain transaction' in str(e.message).lower():
                raise TransactionNotFound(tx_hash) from e
            raise
        # validate response
        if not is_hex_str(raw):
            raise RequestCorrupted(f"received garbage (non-hex) as tx data (txid {tx_hash}): {raw!r}")
        tx = Transaction(raw)
        try:
            tx.deserialize()  # see if raises
        except Exception as e:
            raise RequestCorrupted(f"cannot deserialize received transaction (txid {tx_hash})") from e
        if tx.txid() != tx_hash:
            raise RequestCorrupted(f"received tx does not match expected txid {tx_hash} (got {tx.txid()})")
        return bfh(raw)

    async def get_raw_transactions(self, txids: Sequence[str]) -> List[Tuple[str, bytes]]:
        txids = list(txids)
        async with OldTaskGroup() as group:
            tasks = [await group.spawn(self.get_transaction(txid)) for txid in txids]
        return [(txid, task.result()) for txid, task in zip(txids, tasks)]
