"""
测试客户端入口
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from enclave_client import EnclaveClient
from enclave_client.core.config import ClientConfig
from enclave_client.core.exceptions import AuthRequired, RemoteError, ValidationError


async def _start_server(payload, status=200):
    async def handler(request):
        return web.json_response(payload, status=status)

    app = web.Application()
    app.router.add_get("/v1/address", handler)
    server = TestServer(app)
    await server.start_server()
    return server


class TestRequestWrapper:
    """测试 {success, result, error} 解包"""

    @pytest.mark.asyncio
    async def test_unwraps_result(self):
        server = await _start_server({"success": True, "result": {"address": "0xabc"}})
        client = EnclaveClient(ClientConfig(base_url=str(server.make_url("/"))))
        try:
            assert await client.request_with_wrapper("GET", "/v1/address") == {"address": "0xabc"}
            assert await client.request("GET", "/v1/address") == {
                "success": True,
                "result": {"address": "0xabc"},
            }
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_unsuccessful_wrapper_raises(self):
        server = await _start_server({"success": False, "error": "account not found"})
        client = EnclaveClient(ClientConfig(base_url=str(server.make_url("/"))))
        try:
            with pytest.raises(RemoteError) as exc_info:
                await client.request_with_wrapper("get", "/v1/address")
        finally:
            await client.close()
            await server.close()

        assert exc_info.value.reason == "account not found"
        assert "Endpoint: GET /v1/address" in str(exc_info.value)


class TestStreamFacade:
    """测试订阅入口"""

    @pytest.mark.asyncio
    async def test_subscribe_before_connect_is_latent(self):
        client = EnclaveClient(ClientConfig())
        try:
            await client.subscribe_trades("BTC-USD.P", lambda data: None)
            await client.subscribe_prices(lambda data: None)

            assert not client.is_websocket_connected
            assert [k.key for k in client.stream.registry.snapshot()] == [
                "tradesPerps:BTC-USD.P",
                "prices",
            ]

            await client.unsubscribe_trades("BTC-USD.P")
            assert "tradesPerps:BTC-USD.P" not in client.stream.registry
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_private_channel_without_credentials(self):
        client = EnclaveClient(ClientConfig())
        try:
            with pytest.raises(AuthRequired):
                await client.subscribe_orders(lambda data: None)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_private_channel_with_credentials(self):
        client = EnclaveClient(ClientConfig(api_key="k", api_secret="s"))
        try:
            await client.subscribe_positions(lambda data: None)
            assert "positionsPerps" in client.stream.registry
        finally:
            await client.close()

    def test_invalid_config_rejected(self):
        with pytest.raises(ValidationError):
            EnclaveClient(ClientConfig(max_retries=-1))
