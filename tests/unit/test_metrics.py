"""
测试 Prometheus 指标与 HTTP 端点
"""

import aiohttp
import pytest
from aiohttp.test_utils import TestServer
from prometheus_client import REGISTRY

from enclave_client import metrics


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestRecorders:

    def test_request_outcome(self):
        before = _sample("enclave_requests_total", method="GET", outcome="success")

        metrics.record_request("get", "success")

        assert _sample("enclave_requests_total", method="GET", outcome="success") == before + 1

    def test_connection_status(self):
        metrics.update_connection_status("ws://test", True)
        assert _sample("enclave_connection_status", url="ws://test") == 1

        metrics.update_connection_status("ws://test", False)
        assert _sample("enclave_connection_status", url="ws://test") == 0

    def test_parse_failure(self):
        before = _sample("enclave_parse_failures_total")
        metrics.record_parse_failure()
        assert _sample("enclave_parse_failures_total") == before + 1

    def test_empty_channel_label(self):
        before = _sample("enclave_messages_received_total", channel="unknown")
        metrics.record_message("")
        assert _sample("enclave_messages_received_total", channel="unknown") == before + 1


class TestMetricsApp:
    """测试 /metrics 与 /health"""

    @pytest.mark.asyncio
    async def test_endpoints(self):
        server = TestServer(metrics.create_metrics_app())
        await server.start_server()
        metrics.record_retry("rate_limit")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(server.make_url("/health")) as resp:
                    assert resp.status == 200
                    assert await resp.text() == "OK"

                async with session.get(server.make_url("/metrics")) as resp:
                    assert resp.status == 200
                    body = await resp.text()
        finally:
            await server.close()

        assert "enclave_request_retries_total" in body
