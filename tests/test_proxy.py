import aiohttp
from aiohttp import web
from aiohttp import test_utils

from slpvalidator.simple_config import SimpleConfig
from slpvalidator.slp.proxy import ProxyValidator
from slpvalidator.util import JsonRPCClient, JsonRPCError

from . import SLPTestCase, fake_txid


VALID_TXID = fake_txid("valid")
INVALID_TXID = fake_txid("invalid")


class TestProxyValidator(SLPTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.requests = []
        self.fail_with_status = None

        async def handle(request):
            body = await request.json()
            self.requests.append(body)
            if self.fail_with_status is not None:
                return web.Response(status=self.fail_with_status)
            if body['method'] != 'slpvalidate':
                return web.json_response({'jsonrpc': '2.0', 'id': body['id'],
                                          'error': {'code': -32601, 'message': 'Method not found'}})
            txid = body['params'][0]
            result = 'Valid' if txid == VALID_TXID else 'Invalid'
            return web.json_response({'jsonrpc': '2.0', 'id': body['id'], 'result': result})

        app = web.Application()
        app.router.add_post('/', handle)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.config = SimpleConfig({'proxy_validator_url': str(self.server.make_url('/')),
                                    'datadir': self.slpvalidator_path})

    async def asyncTearDown(self):
        await self.server.close()
        await super().asyncTearDown()

    async def test_is_valid(self):
        validator = ProxyValidator(self.config)
        self.assertTrue(await validator.is_valid(VALID_TXID))
        self.assertFalse(await validator.is_valid(INVALID_TXID))
        self.assertEqual({'jsonrpc': '2.0', 'id': 'slpvalidate', 'method': 'slpvalidate',
                          'params': [VALID_TXID, False, False]},
                         self.requests[0])

    async def test_validate_transactions(self):
        validator = ProxyValidator(self.config)
        valid = await validator.validate_transactions([INVALID_TXID, VALID_TXID])
        self.assertEqual([VALID_TXID], valid)
        self.assertEqual(2, len(self.requests))
        self.assertEqual([], await validator.validate_transactions([]))

    async def test_given_session_is_reused(self):
        async with aiohttp.ClientSession() as session:
            validator = ProxyValidator(self.config, session=session)
            self.assertTrue(await validator.is_valid(VALID_TXID))
            self.assertEqual([VALID_TXID], await validator.validate_transactions([VALID_TXID]))
            self.assertFalse(session.closed)

    async def test_http_error_propagates(self):
        self.fail_with_status = 500
        validator = ProxyValidator(self.config)
        with self.assertRaises(aiohttp.ClientResponseError):
            await validator.is_valid(VALID_TXID)

    async def test_default_url(self):
        config = SimpleConfig({'datadir': self.slpvalidator_path})
        self.assertEqual('https://validate.simpleledger.info', ProxyValidator(config).url)
        self.assertEqual('http://localhost:1/', ProxyValidator(config, url='http://localhost:1/').url)

    async def test_jsonrpc_client_error(self):
        async with aiohttp.ClientSession() as session:
            client = JsonRPCClient(session, str(self.server.make_url('/')))
            with self.assertRaises(JsonRPCError) as ctx:
                await client.request('nonexistent', VALID_TXID)
        self.assertEqual(-32601, ctx.exception.code)
        self.assertEqual('1', self.requests[0]['id'])
