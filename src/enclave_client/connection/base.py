"""
推送通道基础类型

提供连接状态、频道定义、订阅键和安全回调执行。
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

ErrorReporter = Callable[[BaseException], None]


class ConnectionState(Enum):
    """WebSocket 连接状态"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class WebSocketChannel(str, Enum):
    """可订阅的推送频道"""
    PRICES = "prices"
    TRADES = "tradesPerps"
    ORDERBOOK = "topOfBooksPerps"
    ORDERS = "ordersPerps"
    POSITIONS = "positionsPerps"
    DEPOSITS = "deposits"


# 需要凭证的私有频道
PRIVATE_CHANNELS = frozenset({WebSocketChannel.ORDERS.value, WebSocketChannel.POSITIONS.value})


def channel_name(channel: Union[WebSocketChannel, str]) -> str:
    if isinstance(channel, WebSocketChannel):
        return channel.value
    return str(channel)


@dataclass(frozen=True)
class SubscriptionKey:
    """
    订阅键: (频道, 可选市场)

    字符串形式为 "channel" 或 "channel:market"，用于精确匹配。
    """
    channel: str
    market: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.channel}:{self.market}" if self.market else self.channel

    @classmethod
    def of(cls, channel: Union[WebSocketChannel, str], market: Optional[str] = None) -> "SubscriptionKey":
        return cls(channel_name(channel), market or None)

    @classmethod
    def parse(cls, key: str) -> "SubscriptionKey":
        """从字符串还原 (市场中可含冒号)"""
        channel, sep, market = key.partition(":")
        return cls(channel, market if sep else None)

    def to_wire(self, op: str) -> dict:
        """转换为 subscribe/unsubscribe 控制消息"""
        message = {"op": op, "channel": self.channel}
        if self.market:
            message["market"] = self.market
        return message

    def __str__(self) -> str:
        return self.key


def safe_invoke(
    callback: Callable,
    *args: Any,
    on_error: Optional[ErrorReporter] = None,
) -> bool:
    """
    安全执行回调

    同步回调直接调用；返回协程时调度到当前事件循环，失败同样上报。
    Returns:
        同步部分是否成功
    """
    try:
        result = callback(*args)
    except Exception as e:
        logger.error(f"Callback error in {getattr(callback, '__name__', callback)!r}: {e}")
        if on_error is not None:
            on_error(e)
        return False

    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        task.add_done_callback(lambda t: _report_task_failure(t, callback, on_error))
    return True


def _report_task_failure(task: asyncio.Future, callback: Callable, on_error: Optional[ErrorReporter]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        return
    logger.error(f"Async callback error in {getattr(callback, '__name__', callback)!r}: {exc}")
    if on_error is not None:
        on_error(exc)
