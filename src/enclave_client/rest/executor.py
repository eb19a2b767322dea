"""
请求执行器

发送单次 REST 调用，附加 HMAC 认证头，并按策略重试:
- HTTP 429: 指数退避重试, 耗尽后抛出 RateLimited
- 传输层错误 (连接拒绝、DNS、断连、响应体中途断开): 同样退避重试, 耗尽后抛出 TransportFailure
- 本地超时: 立即抛出 Timeout, 不重试
- 其他非 2xx: 立即抛出 RemoteError

退避公式: retry_delay * 2^(attempt - 1)
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urljoin, urlsplit

import aiohttp

from .. import metrics
from ..auth import HmacAuth
from ..core.config import ClientConfig
from ..core.exceptions import RateLimited, RemoteError, Timeout, TransportFailure

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429

Sleeper = Callable[[float], Awaitable[Any]]


class RequestExecutor:
    """
    REST 请求执行器

    每次 execute 调用拥有独立的尝试计数，多个调用可并发执行，
    共享的只有只读配置和 aiohttp 会话。
    """

    def __init__(
        self,
        base_url: str,
        auth: Optional[HmacAuth] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.base_url = base_url
        self.auth = auth
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        auth: Optional[HmacAuth] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> "RequestExecutor":
        if auth is None and config.has_credentials:
            auth = HmacAuth(config.api_key, config.api_secret)
        return cls(
            config.base_url,
            auth=auth,
            timeout=config.timeout,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            session=session,
        )

    def backoff_delay(self, attempt: int) -> float:
        """第 attempt 次尝试失败后的等待时间 (秒)"""
        return self.retry_delay * (2 ** (attempt - 1))

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """关闭自有会话"""
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def execute(self, method: str, target: str, body: Any = None) -> Any:
        """
        执行请求

        Args:
            method: HTTP 方法
            target: 路径 (含查询串), 相对 base_url
            body: 可 JSON 序列化的请求体

        Returns:
            解析后的 JSON 响应 (空响应为 {})

        Raises:
            RateLimited, TransportFailure, Timeout, RemoteError
        """
        method = method.upper()
        url = urljoin(self.base_url, target)
        parts = urlsplit(url)
        signed_path = parts.path + (f"?{parts.query}" if parts.query else "")
        body_str = json.dumps(body, separators=(",", ":")) if body is not None else ""

        attempt = 1
        while True:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if self.auth is not None:
                headers.update(self.auth.generate_auth_headers(method, signed_path, body_str))

            logger.debug(f"{method} {url} (attempt {attempt})")

            try:
                status, text = await self._send(method, url, headers, body_str)
            except asyncio.TimeoutError:
                metrics.record_request(method, "timeout")
                raise Timeout(method, target, self.timeout) from None
            except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
                if attempt > self.max_retries:
                    metrics.record_request(method, "transport_failure")
                    raise TransportFailure(method, target, attempt, cause=e) from e
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"{method} {target}: transport error ({e}), "
                    f"retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                metrics.record_retry("transport")
                await self._sleep(delay)
                attempt += 1
                continue

            if status == RATE_LIMIT_STATUS:
                if attempt > self.max_retries:
                    metrics.record_request(method, "rate_limited")
                    raise RateLimited(method, target, attempt, status=status, response_body=text)
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"{method} {target}: rate limited, "
                    f"retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                metrics.record_retry("rate_limit")
                await self._sleep(delay)
                attempt += 1
                continue

            return self._parse_response(method, target, status, text)

    async def _send(self, method: str, url: str, headers: Dict[str, str], body: str):
        session = await self._get_session()
        async with session.request(
            method,
            url,
            headers=headers,
            data=body or None,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            return resp.status, await resp.text(errors="replace")

    def _parse_response(self, method: str, target: str, status: int, text: str) -> Any:
        try:
            parsed = json.loads(text) if text else {}
        except ValueError as e:
            metrics.record_request(method, "remote_error")
            raise RemoteError(
                f"Failed to parse response: {e}", target, method, status, text
            ) from e

        if 200 <= status < 300:
            metrics.record_request(method, "success")
            return parsed

        message = None
        if isinstance(parsed, dict):
            message = parsed.get("error") or parsed.get("message")
        metrics.record_request(method, "remote_error")
        raise RemoteError(str(message or text or "Request failed"), target, method, status, text)

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
