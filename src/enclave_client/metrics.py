"""
Prometheus 指标模块

提供客户端监控指标:
- 推送连接状态与重连次数
- 推送消息、解析失败与回调异常计数
- 请求结果与重试计数
"""

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest


# ============ 连接指标 ============
CONNECTION_STATUS = Gauge(
    'enclave_connection_status',
    'Stream connection status (1=connected, 0=disconnected)',
    ['url']
)

RECONNECT_COUNT = Counter(
    'enclave_reconnect_total',
    'Total number of scheduled reconnection attempts',
    ['url']
)

# ============ 消息指标 ============
MESSAGES_RECEIVED = Counter(
    'enclave_messages_received_total',
    'Total data frames received from the stream',
    ['channel']
)

PARSE_FAILURES = Counter(
    'enclave_parse_failures_total',
    'Inbound frames dropped because they could not be parsed'
)

HANDLER_ERRORS = Counter(
    'enclave_handler_errors_total',
    'Subscription handler failures isolated during dispatch',
    ['channel']
)

# ============ 请求指标 ============
REQUESTS = Counter(
    'enclave_requests_total',
    'Requests completed by the executor',
    ['method', 'outcome']
)

REQUEST_RETRIES = Counter(
    'enclave_request_retries_total',
    'Request retries scheduled by the executor',
    ['reason']
)


def update_connection_status(url: str, connected: bool) -> None:
    """更新连接状态"""
    CONNECTION_STATUS.labels(url=url).set(1 if connected else 0)


def record_reconnect(url: str) -> None:
    """记录重连"""
    RECONNECT_COUNT.labels(url=url).inc()


def record_message(channel: str) -> None:
    """记录消息"""
    MESSAGES_RECEIVED.labels(channel=channel or "unknown").inc()


def record_parse_failure() -> None:
    PARSE_FAILURES.inc()


def record_handler_error(channel: str) -> None:
    HANDLER_ERRORS.labels(channel=channel or "unknown").inc()


def record_request(method: str, outcome: str) -> None:
    """记录请求结果 (success / rate_limited / transport_failure / timeout / remote_error)"""
    REQUESTS.labels(method=method.upper(), outcome=outcome).inc()


def record_retry(reason: str) -> None:
    """记录重试 (rate_limit / transport)"""
    REQUEST_RETRIES.labels(reason=reason).inc()


# ============ HTTP 端点 ============

async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus metrics endpoint"""
    return web.Response(
        body=generate_latest(),
        headers={"Content-Type": CONTENT_TYPE_LATEST},
    )


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint"""
    return web.Response(text="OK", status=200)


def create_metrics_app() -> web.Application:
    """创建 metrics HTTP 应用"""
    app = web.Application()
    app.router.add_get('/metrics', metrics_handler)
    app.router.add_get('/health', health_handler)
    return app
