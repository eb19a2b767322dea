"""
推送连接管理器

持有唯一的 WebSocket 连接，负责:
- 建立连接、认证、重放订阅
- 入站消息解析与分发 (通过 SubscriptionRegistry)
- 心跳探测 (HeartbeatMonitor)
- 指数退避重连 (ReconnectScheduler)

状态机:
    DISCONNECTED --connect()--> CONNECTING --open, auth, replay--> CONNECTED
    CONNECTED --transport closed--> DISCONNECTED (按需自动重连)
    CONNECTED --disconnect()--> DISCONNECTED (终止, 不再重连)

所有状态变更都在同一个事件循环上进行；其他线程通过 submit() 投递协程。
"""

import asyncio
import concurrent.futures
import json
import logging
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union

import aiohttp

from .. import metrics
from ..auth import HmacAuth
from ..core.config import ClientConfig
from ..core.exceptions import AuthRequired, ConnectionError, ParseFailure, StreamError
from .base import (
    PRIVATE_CHANNELS,
    ConnectionState,
    SubscriptionKey,
    WebSocketChannel,
    safe_invoke,
)
from .heartbeat import HeartbeatMonitor
from .reconnect import ReconnectScheduler
from .registry import MessageHandler, SubscriptionRegistry

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "on_connected",
    "on_disconnected",
    "on_subscribed",
    "on_unsubscribed",
    "on_message",
    "on_error",
    "on_reconnect_exhausted",
)


class ConnectionManager:
    """单连接、多订阅的推送通道"""

    def __init__(
        self,
        url: str,
        auth: Optional[HmacAuth] = None,
        reconnect: bool = True,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 10,
        reconnect_cap_exponent: int = 5,
        heartbeat_interval: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        registry: Optional[SubscriptionRegistry] = None,
    ):
        self.url = url
        self.auth = auth
        self.state = ConnectionState.DISCONNECTED

        self.registry = registry or SubscriptionRegistry()
        self.registry.set_error_reporter(self._on_handler_error)
        self.heartbeat = HeartbeatMonitor(heartbeat_interval)
        self.scheduler = ReconnectScheduler(
            base_delay=reconnect_delay,
            max_attempts=max_reconnect_attempts,
            cap_exponent=reconnect_cap_exponent,
            name=url,
        )

        # 重连开关
        self._reconnect_default = reconnect
        self.reconnect_enabled = reconnect
        self._shutdown = False

        # 连接
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._callbacks: Dict[str, List[Callable]] = {}
        self._sequence = 0

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        auth: Optional[HmacAuth] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> "ConnectionManager":
        if auth is None and config.has_credentials:
            auth = HmacAuth(config.api_key, config.api_secret)
        return cls(
            config.ws_url,
            auth=auth,
            reconnect=config.reconnect,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            reconnect_cap_exponent=config.reconnect_cap_exponent,
            heartbeat_interval=config.heartbeat_interval,
            session=session,
        )

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self._ws is not None
            and not self._ws.closed
        )

    @property
    def sequence(self) -> int:
        """已见到的最大序号 (仅用于观测)"""
        return self._sequence

    # --------------------------------------------------------
    # CALLBACKS
    # --------------------------------------------------------

    def register_callback(self, event_type: str, callback: Callable) -> None:
        """
        注册事件回调

        Args:
            event_type: on_connected / on_disconnected / on_subscribed / on_unsubscribed /
                        on_message / on_error / on_reconnect_exhausted
            callback: 同步或异步回调
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._callbacks.setdefault(event_type, []).append(callback)
        logger.debug(f"Registered callback for {event_type}")

    def unregister_callback(self, event_type: str, callback: Optional[Callable] = None) -> None:
        """取消注册回调; callback 为空时移除该事件的全部回调"""
        if callback is None:
            self._callbacks.pop(event_type, None)
            return
        callbacks = self._callbacks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _emit(self, event_type: str, payload: Any) -> None:
        for callback in list(self._callbacks.get(event_type, ())):
            safe_invoke(callback, payload)

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """
        建立连接

        已连接时直接返回；并发调用在锁上排队，不会出现第二个连接尝试。
        Raises:
            ConnectionError: 传输层打开失败
        """
        self._shutdown = False
        self.reconnect_enabled = self._reconnect_default
        await self._open()

    async def _open(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return

            self._loop = asyncio.get_running_loop()
            self._update_state(ConnectionState.CONNECTING)

            try:
                if self._session is None or self._session.closed:
                    self._session = aiohttp.ClientSession()
                    self._owns_session = True
                ws = await self._session.ws_connect(self.url, autoping=False)
            except asyncio.CancelledError:
                self._update_state(ConnectionState.DISCONNECTED)
                raise
            except Exception as e:
                self._update_state(ConnectionState.DISCONNECTED)
                logger.error(f"WebSocket connection failed: {e}")
                error = ConnectionError(
                    f"WebSocket connection failed: {e}",
                    url=self.url,
                    reconnect_attempts=self.scheduler.attempts,
                )
                self._emit("on_error", error)
                raise error from e

            if self._shutdown:
                await ws.close()
                self._update_state(ConnectionState.DISCONNECTED)
                raise ConnectionError("Disconnected while connecting", url=self.url)

            # 认证与重放期间保持 CONNECTING, subscribe/unsubscribe 只改注册表
            self._ws = ws
            self.scheduler.cancel()
            self.scheduler.reset()
            self.heartbeat.start(self._send_probe)

            # 认证必须先于订阅重放
            if self.auth is not None:
                await self._send_control(self.auth.ws_auth_message())
            await self._replay_subscriptions()

            if self._shutdown or self._ws is not ws:
                if not ws.closed:
                    await ws.close()
                raise ConnectionError("Disconnected while connecting", url=self.url)

            self._update_state(ConnectionState.CONNECTED)
            metrics.update_connection_status(self.url, True)
            self._receive_task = asyncio.create_task(self._receive_loop(ws))
            self._emit("on_connected", {"url": self.url})

    async def disconnect(self) -> None:
        """关闭连接并停止重连 (重复调用无副作用)"""
        if self._shutdown:
            return
        self._shutdown = True
        self.reconnect_enabled = False

        self.scheduler.cancel()
        self.heartbeat.stop()

        task = self._receive_task
        self._receive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            await ws.close()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._update_state(ConnectionState.DISCONNECTED)
        metrics.update_connection_status(self.url, False)
        logger.info("WebSocket disconnected by client")
        self._emit("on_disconnected", {"code": 1000, "reason": "Client disconnect"})

    def submit(self, coro: Coroutine) -> concurrent.futures.Future:
        """从其他线程投递协程到连接所在的事件循环"""
        if self._loop is None or self._loop.is_closed():
            coro.close()
            raise RuntimeError("Connection manager has no running loop, call connect() first")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    async def _handle_close(self, ws: aiohttp.ClientWebSocketResponse, reason: str = "") -> None:
        code = ws.close_code
        if not ws.closed:
            await ws.close()

        self.heartbeat.stop()
        self._ws = None
        self._receive_task = None
        self._update_state(ConnectionState.DISCONNECTED)
        metrics.update_connection_status(self.url, False)

        logger.warning(f"WebSocket closed: {code} {reason}")
        self._emit("on_disconnected", {"code": code, "reason": reason})

        if self.reconnect_enabled:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        delay = self.scheduler.schedule_retry(self._reconnect)
        if delay is None:
            error = ConnectionError(
                "Max reconnect attempts reached",
                url=self.url,
                reconnect_attempts=self.scheduler.attempts,
            )
            self._emit("on_error", error)
            self._emit("on_reconnect_exhausted", error)
            return
        metrics.record_reconnect(self.url)

    async def _reconnect(self) -> None:
        if self._shutdown or not self.reconnect_enabled:
            return
        try:
            await self._open()
        except ConnectionError:
            if not self._shutdown and self.reconnect_enabled:
                self._schedule_reconnect()

    def _update_state(self, new_state: ConnectionState) -> None:
        old_state = self.state
        self.state = new_state
        if old_state != new_state:
            logger.info(f"{self.url}: State changed {old_state.value} -> {new_state.value}")

    # --------------------------------------------------------
    # SUBSCRIPTIONS
    # --------------------------------------------------------

    async def subscribe(
        self,
        channel: Union[WebSocketChannel, str],
        handler: MessageHandler,
        market: Optional[str] = None,
    ) -> SubscriptionKey:
        """
        订阅频道

        该键的第一个回调且已连接时立即发送 subscribe；否则保持潜伏，下次连接成功后重放。
        Raises:
            AuthRequired: 私有频道且未配置凭证
        """
        key = SubscriptionKey.of(channel, market)
        if key.channel in PRIVATE_CHANNELS and self.auth is None:
            raise AuthRequired(key.channel)

        if self.registry.add(key, handler) and self.is_connected:
            await self._send_control(key.to_wire("subscribe"))
        return key

    async def unsubscribe(
        self,
        channel: Union[WebSocketChannel, str],
        handler: Optional[MessageHandler] = None,
        market: Optional[str] = None,
    ) -> bool:
        """
        取消订阅; handler 为空时移除该键的全部回调

        Returns:
            条目是否被删除
        """
        key = SubscriptionKey.of(channel, market)
        removed = self.registry.remove(key, handler)
        if removed and self.is_connected:
            await self._send_control(key.to_wire("unsubscribe"))
        return removed

    async def _replay_subscriptions(self) -> None:
        """
        重放全部订阅

        发送期间注册表可能变化，重复比对快照直到线上状态与注册表一致，
        每个键只发送一次 subscribe。
        """
        sent: Dict[str, SubscriptionKey] = {}
        while True:
            snapshot = self.registry.snapshot()
            added = [key for key in snapshot if key.key not in sent]
            removed = [key for name, key in sent.items() if name not in snapshot]
            if not added and not removed:
                break

            for key in added:
                await self._send_control(key.to_wire("subscribe"))
                sent[key.key] = key
            for key in removed:
                await self._send_control(key.to_wire("unsubscribe"))
                del sent[key.key]

        if sent:
            logger.info(f"Replayed {len(sent)} subscriptions")

    # --------------------------------------------------------
    # SENDING
    # --------------------------------------------------------

    async def send(self, message: Dict[str, Any]) -> bool:
        """
        发送 JSON 消息

        Returns:
            是否已写出 (未连接时丢弃)
        """
        ws = self._ws
        if ws is None or ws.closed:
            logger.debug(f"Dropping outbound message while disconnected: {message}")
            return False
        await ws.send_json(message)
        logger.debug(f"Sent: {message}")
        return True

    async def _send_control(self, message: Dict[str, Any]) -> bool:
        """发送控制消息，失败只上报不抛出"""
        try:
            return await self.send(message)
        except Exception as e:
            logger.error(f"Failed to send {message.get('op')}: {e}")
            self._emit("on_error", e)
            return False

    async def _send_probe(self) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise ConnectionError("Not connected", url=self.url)
        await ws.ping()

    # --------------------------------------------------------
    # MESSAGE HANDLING
    # --------------------------------------------------------

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """消息处理循环"""
        reason = ""
        try:
            while True:
                msg = await ws.receive()

                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_raw(msg.data)

                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_raw(msg.data)

                elif msg.type == aiohttp.WSMsgType.PING:
                    await ws.pong(msg.data)

                elif msg.type == aiohttp.WSMsgType.PONG:
                    self.heartbeat.record_pong()

                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    reason = msg.extra or ""
                    break

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
                    break

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in receive loop: {e}")
            self._emit("on_error", e)

        if ws is self._ws and not self._shutdown:
            await self._handle_close(ws, str(reason))

    def _handle_raw(self, raw: Union[str, bytes]) -> None:
        """解析入站帧，失败时丢弃并上报"""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            message = json.loads(raw)
        except ValueError as e:
            self._report_parse_failure(f"Failed to parse message: {e}", raw)
            return

        if not isinstance(message, dict):
            self._report_parse_failure("Unexpected frame shape", raw)
            return

        self._handle_message(message)

    def _handle_message(self, message: Dict[str, Any]) -> None:
        """按类型分类: 控制确认 / 错误 / 数据"""
        logger.debug(f"Received: {message}")

        sequence = message.get("sequence")
        if isinstance(sequence, int) and not isinstance(sequence, bool):
            self._sequence = max(self._sequence, sequence)

        msg_type = message.get("type")
        channel = message.get("channel") or ""
        data = message.get("data")

        if msg_type == "subscribed":
            self._emit("on_subscribed", message)
            return

        if msg_type == "unsubscribed":
            self._emit("on_unsubscribed", message)
            return

        if msg_type == "error":
            error_message = "Unknown error"
            if isinstance(data, dict) and data.get("message"):
                error_message = str(data["message"])
            logger.error(f"Stream error on {channel or 'connection'}: {error_message}")
            self._emit("on_error", StreamError(error_message, channel=channel, data=data))
            return

        if msg_type == "pong":
            self.heartbeat.record_pong()
            return

        market = data.get("market") if isinstance(data, dict) else None
        metrics.record_message(channel)
        self.registry.dispatch(SubscriptionKey.of(channel, market), data)
        self._emit("on_message", message)

    def _report_parse_failure(self, reason: str, raw: Union[str, bytes]) -> None:
        error = ParseFailure(reason, raw=raw if isinstance(raw, str) else repr(raw))
        logger.warning(f"{reason}; frame dropped")
        metrics.record_parse_failure()
        self._emit("on_error", error)

    def _on_handler_error(self, key: SubscriptionKey, error: BaseException) -> None:
        metrics.record_handler_error(key.channel)
        self._emit("on_error", error)

    # --------------------------------------------------------
    # CONTEXT MANAGER
    # --------------------------------------------------------

    async def __aenter__(self) -> "ConnectionManager":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()
