"""
测试请求执行器的重试策略
"""

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from enclave_client.auth import HmacAuth, KEY_ID_HEADER, SIGN_HEADER, TIMESTAMP_HEADER
from enclave_client.core.exceptions import RateLimited, RemoteError, Timeout, TransportFailure
from enclave_client.rest import RequestExecutor


class SleepRecorder:
    """记录退避时长，不真正等待"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def _start_server(handler, path="/v1/markets"):
    app = web.Application()
    app.router.add_route("*", path, handler)
    server = TestServer(app)
    await server.start_server()
    return server


def _executor(server, sleep, **kwargs):
    return RequestExecutor(str(server.make_url("/")), sleep=sleep, **kwargs)


class TestRetryPolicy:
    """测试 429 与传输错误的退避重试"""

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self):
        hits = []

        async def handler(request):
            hits.append(1)
            if len(hits) <= 3:
                return web.json_response({"error": "slow down"}, status=429)
            return web.json_response({"ok": True})

        server = await _start_server(handler)
        sleep = SleepRecorder()
        executor = _executor(server, sleep, max_retries=3, retry_delay=0.5)
        try:
            result = await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert result == {"ok": True}
        assert len(hits) == 4
        assert sleep.delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self):
        hits = []

        async def handler(request):
            hits.append(1)
            return web.Response(status=429, text="too many")

        server = await _start_server(handler)
        sleep = SleepRecorder()
        executor = _executor(server, sleep, max_retries=2, retry_delay=1.0)
        try:
            with pytest.raises(RateLimited) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert len(hits) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.status == 429
        assert exc_info.value.response_body == "too many"
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_zero_retries_fails_on_first_429(self):
        async def handler(request):
            return web.Response(status=429)

        server = await _start_server(handler)
        sleep = SleepRecorder()
        executor = _executor(server, sleep, max_retries=0)
        try:
            with pytest.raises(RateLimited) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_connection_refused_exhausts_retries(self):
        sleep = SleepRecorder()
        executor = RequestExecutor(
            "http://127.0.0.1:1/", max_retries=2, retry_delay=0.25, sleep=sleep
        )
        try:
            with pytest.raises(TransportFailure) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()

        assert exc_info.value.attempts == 3
        assert exc_info.value.cause is not None
        assert sleep.delays == [0.25, 0.5]

    @pytest.mark.asyncio
    async def test_truncated_body_retried_as_transport_failure(self):
        connections = []

        async def short_body(reader, writer):
            connections.append(1)
            await reader.readuntil(b"\r\n\r\n")
            writer.write(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: application/json\r\n"
                b"Content-Length: 100\r\n"
                b"\r\n"
                b"{\"a\":"
            )
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(short_body, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        sleep = SleepRecorder()
        executor = RequestExecutor(
            f"http://127.0.0.1:{port}/", max_retries=2, retry_delay=0.1, sleep=sleep
        )
        try:
            with pytest.raises(TransportFailure) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            server.close()
            await server.wait_closed()

        assert exc_info.value.attempts == 3
        assert len(connections) == 3
        assert sleep.delays == [0.1, 0.2]

    def test_backoff_formula(self):
        executor = RequestExecutor("http://localhost/", retry_delay=1.5)
        assert [executor.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.5, 3.0, 6.0, 12.0]


class TestNonRetryable:
    """测试不重试的结果"""

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self):
        hits = []

        async def handler(request):
            hits.append(1)
            await asyncio.sleep(0.5)
            return web.json_response({})

        server = await _start_server(handler)
        sleep = SleepRecorder()
        executor = _executor(server, sleep, timeout=0.05, max_retries=3)
        try:
            with pytest.raises(Timeout) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert len(hits) == 1
        assert sleep.delays == []
        assert exc_info.value.timeout == 0.05

    @pytest.mark.asyncio
    async def test_client_error_raises_remote_error(self):
        hits = []

        async def handler(request):
            hits.append(1)
            return web.json_response({"error": "Invalid market"}, status=400)

        server = await _start_server(handler)
        sleep = SleepRecorder()
        executor = _executor(server, sleep)
        try:
            with pytest.raises(RemoteError) as exc_info:
                await executor.execute("POST", "/v1/markets", {"market": "XYZ"})
        finally:
            await executor.close()
            await server.close()

        err = exc_info.value
        assert len(hits) == 1
        assert sleep.delays == []
        assert err.status == 400
        assert err.reason == "Invalid market"
        assert "Endpoint: POST /v1/markets" in str(err)
        assert "Status Code: 400" in str(err)

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self):
        hits = []

        async def handler(request):
            hits.append(1)
            return web.Response(status=503, text="maintenance")

        server = await _start_server(handler)
        sleep = SleepRecorder()
        executor = _executor(server, sleep)
        try:
            with pytest.raises(RemoteError) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert len(hits) == 1
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_undecodable_error_body(self):
        async def handler(request):
            return web.Response(
                status=502,
                body=b"\xff\xfe bad gateway",
                content_type="text/plain",
                charset="utf-8",
            )

        server = await _start_server(handler)
        sleep = SleepRecorder()
        executor = _executor(server, sleep)
        try:
            with pytest.raises(RemoteError) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        err = exc_info.value
        assert err.status == 502
        assert "bad gateway" in err.response_body
        assert "Endpoint: GET /v1/markets" in str(err)
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unparseable_success_body(self):
        async def handler(request):
            return web.Response(status=200, text="<html>")

        server = await _start_server(handler)
        executor = _executor(server, SleepRecorder())
        try:
            with pytest.raises(RemoteError) as exc_info:
                await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert "Failed to parse response" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self):
        async def handler(request):
            return web.Response(status=200)

        server = await _start_server(handler)
        executor = _executor(server, SleepRecorder())
        try:
            assert await executor.execute("DELETE", "/v1/markets") == {}
        finally:
            await executor.close()
            await server.close()


class TestAuthHeaders:
    """测试签名头"""

    @pytest.mark.asyncio
    async def test_signed_request(self):
        seen = {}

        async def handler(request):
            seen["headers"] = request.headers.copy()
            seen["path_qs"] = request.path_qs
            seen["body"] = await request.text()
            return web.json_response({"success": True})

        server = await _start_server(handler)
        auth = HmacAuth("key-1", "secret-1")
        executor = RequestExecutor(str(server.make_url("/")), auth=auth, sleep=SleepRecorder())
        try:
            await executor.execute("post", "/v1/markets?limit=5", {"side": "buy", "size": "1"})
        finally:
            await executor.close()
            await server.close()

        headers = seen["headers"]
        body = json.dumps({"side": "buy", "size": "1"}, separators=(",", ":"))
        assert seen["body"] == body
        assert seen["path_qs"] == "/v1/markets?limit=5"
        assert headers[KEY_ID_HEADER] == "key-1"
        expected = auth.sign(f"{headers[TIMESTAMP_HEADER]}POST/v1/markets?limit=5{body}")
        assert headers[SIGN_HEADER] == expected

    @pytest.mark.asyncio
    async def test_signature_refreshed_per_attempt(self):
        timestamps = []

        async def handler(request):
            timestamps.append(request.headers[TIMESTAMP_HEADER])
            if len(timestamps) == 1:
                return web.Response(status=429)
            return web.json_response({})

        server = await _start_server(handler)

        async def slow_sleep(delay):
            await asyncio.sleep(0.02)

        executor = RequestExecutor(
            str(server.make_url("/")), auth=HmacAuth("k", "s"), sleep=slow_sleep
        )
        try:
            await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert len(timestamps) == 2
        assert int(timestamps[1]) > int(timestamps[0])

    @pytest.mark.asyncio
    async def test_no_auth_headers_without_credentials(self):
        seen = {}

        async def handler(request):
            seen["headers"] = request.headers.copy()
            return web.json_response({})

        server = await _start_server(handler)
        executor = _executor(server, SleepRecorder())
        try:
            await executor.execute("GET", "/v1/markets")
        finally:
            await executor.close()
            await server.close()

        assert KEY_ID_HEADER not in seen["headers"]
        assert SIGN_HEADER not in seen["headers"]
