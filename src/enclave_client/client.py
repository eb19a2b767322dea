"""
Enclave 客户端

组合 RequestExecutor 与 ConnectionManager:
- request / request_with_wrapper: 一次性调用
- subscribe_* / unsubscribe_*: 持续推送 (未连接时订阅保持潜伏)
"""

import logging
from typing import Any, Optional

import aiohttp

from .auth import HmacAuth
from .connection import ConnectionManager, WebSocketChannel
from .connection.registry import MessageHandler
from .core.config import ClientConfig
from .core.exceptions import RemoteError
from .rest import RequestExecutor

logger = logging.getLogger(__name__)


class EnclaveClient:
    """REST + WebSocket 客户端入口"""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = (config or ClientConfig()).validate()
        self.auth = (
            HmacAuth(self.config.api_key, self.config.api_secret)
            if self.config.has_credentials else None
        )
        self._session = session
        self.executor = RequestExecutor.from_config(self.config, auth=self.auth, session=session)
        self._stream: Optional[ConnectionManager] = None

    @property
    def stream(self) -> ConnectionManager:
        """推送连接管理器 (首次访问时创建)"""
        if self._stream is None:
            self._stream = ConnectionManager.from_config(
                self.config, auth=self.auth, session=self._session
            )
        return self._stream

    @property
    def is_websocket_connected(self) -> bool:
        return self._stream is not None and self._stream.is_connected

    # ==================== REST ====================

    async def request(self, method: str, path: str, body: Any = None) -> Any:
        return await self.executor.execute(method, path, body)

    async def request_with_wrapper(self, method: str, path: str, body: Any = None) -> Any:
        """
        执行请求并解包 {success, result, error}

        Raises:
            RemoteError: success 为 false
        """
        response = await self.executor.execute(method, path, body)
        if not isinstance(response, dict) or not response.get("success"):
            error = response.get("error") if isinstance(response, dict) else None
            raise RemoteError(error or "Request failed", path, method.upper())
        return response.get("result")

    # ==================== WebSocket ====================

    async def connect_websocket(self) -> None:
        await self.stream.connect()

    async def disconnect_websocket(self) -> None:
        if self._stream is not None:
            await self._stream.disconnect()

    async def subscribe_trades(self, market: str, handler: MessageHandler) -> None:
        await self.stream.subscribe(WebSocketChannel.TRADES, handler, market)

    async def unsubscribe_trades(self, market: str, handler: Optional[MessageHandler] = None) -> None:
        await self.stream.unsubscribe(WebSocketChannel.TRADES, handler, market)

    async def subscribe_orderbook(self, market: str, handler: MessageHandler) -> None:
        await self.stream.subscribe(WebSocketChannel.ORDERBOOK, handler, market)

    async def unsubscribe_orderbook(self, market: str, handler: Optional[MessageHandler] = None) -> None:
        await self.stream.unsubscribe(WebSocketChannel.ORDERBOOK, handler, market)

    async def subscribe_prices(self, handler: MessageHandler, market: Optional[str] = None) -> None:
        await self.stream.subscribe(WebSocketChannel.PRICES, handler, market)

    async def unsubscribe_prices(
        self,
        handler: Optional[MessageHandler] = None,
        market: Optional[str] = None,
    ) -> None:
        await self.stream.unsubscribe(WebSocketChannel.PRICES, handler, market)

    async def subscribe_orders(self, handler: MessageHandler) -> None:
        """订单推送 (需要凭证)"""
        await self.stream.subscribe(WebSocketChannel.ORDERS, handler)

    async def unsubscribe_orders(self, handler: Optional[MessageHandler] = None) -> None:
        await self.stream.unsubscribe(WebSocketChannel.ORDERS, handler)

    async def subscribe_positions(self, handler: MessageHandler) -> None:
        """仓位推送 (需要凭证)"""
        await self.stream.subscribe(WebSocketChannel.POSITIONS, handler)

    async def unsubscribe_positions(self, handler: Optional[MessageHandler] = None) -> None:
        await self.stream.unsubscribe(WebSocketChannel.POSITIONS, handler)

    # ==================== Lifecycle ====================

    async def close(self) -> None:
        await self.disconnect_websocket()
        await self.executor.close()
        logger.info("Enclave client closed")

    async def __aenter__(self) -> "EnclaveClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
