"""
订阅注册表

维护订阅键到回调集合的映射，不感知网络:
- add/remove 返回是否需要发送线上 subscribe/unsubscribe
- dispatch 隔离单个回调异常
- snapshot 提供重连后重放用的一致视图
"""

import logging
import threading
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Tuple, Union

from .base import SubscriptionKey, safe_invoke

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Any]
HandlerErrorReporter = Callable[[SubscriptionKey, BaseException], None]
KeyLike = Union[SubscriptionKey, str]


def _as_key(key: KeyLike) -> SubscriptionKey:
    if isinstance(key, SubscriptionKey):
        return key
    return SubscriptionKey.parse(key)


def _identity(handler: MessageHandler) -> Hashable:
    """
    回调的身份标识

    普通可调用对象按 id 区分 (不要求可哈希，相等但不同的实例视为不同回调)；
    绑定方法每次取属性都会生成新对象，按 (所属对象, 方法名) 区分。
    """
    owner = getattr(handler, "__self__", None)
    if owner is not None:
        return id(owner), getattr(handler, "__name__", None)
    return id(handler)


class SubscriptionSnapshot:
    """
    注册表的时点快照

    创建时复制键列表，之后的增删不影响它；可重复迭代，按需生成 SubscriptionKey。
    """

    def __init__(self, keys: Tuple[str, ...]):
        self._keys = keys

    def __iter__(self) -> Iterator[SubscriptionKey]:
        for key in self._keys:
            yield SubscriptionKey.parse(key)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, SubscriptionKey):
            item = item.key
        return item in self._keys

    def __repr__(self) -> str:
        return f"SubscriptionSnapshot({list(self._keys)!r})"


class SubscriptionRegistry:
    """
    订阅键 -> 回调集合

    回调按身份去重 (见 _identity)，空集合的条目会被立即删除。
    增删与 snapshot 在同一把锁下执行。
    """

    def __init__(self, on_handler_error: Optional[HandlerErrorReporter] = None):
        # 条目内: 身份标识 -> 回调, 保持插入顺序
        self._entries: Dict[str, Dict[Hashable, MessageHandler]] = {}
        self._lock = threading.Lock()
        self._on_handler_error = on_handler_error

    def set_error_reporter(self, reporter: Optional[HandlerErrorReporter]) -> None:
        self._on_handler_error = reporter

    def add(self, key: KeyLike, handler: MessageHandler) -> bool:
        """
        注册回调

        Returns:
            是否为该键的第一个回调 (调用方据此发送线上 subscribe)
        """
        key = _as_key(key)
        with self._lock:
            handlers = self._entries.get(key.key)
            created = handlers is None
            if created:
                handlers = self._entries[key.key] = {}
            handlers.setdefault(_identity(handler), handler)

        if created:
            logger.debug(f"Registry: created entry {key}")
        return created

    def remove(self, key: KeyLike, handler: Optional[MessageHandler] = None) -> bool:
        """
        移除回调; handler 为空时移除整个条目

        Returns:
            条目是否被删除 (调用方据此发送线上 unsubscribe)
        """
        key = _as_key(key)
        with self._lock:
            handlers = self._entries.get(key.key)
            if handlers is None:
                return False

            if handler is not None:
                handlers.pop(_identity(handler), None)
                if handlers:
                    return False

            del self._entries[key.key]

        logger.debug(f"Registry: removed entry {key}")
        return True

    def dispatch(self, key: KeyLike, payload: Any) -> int:
        """
        将 payload 分发给该键的全部回调

        单个回调异常不影响其余回调，也不向调用方抛出。
        Returns:
            成功调用的回调数量
        """
        key = _as_key(key)
        with self._lock:
            handlers = self._entries.get(key.key)
            if not handlers:
                return 0
            handlers = list(handlers.values())

        delivered = 0
        for handler in handlers:
            if safe_invoke(handler, payload, on_error=lambda e: self._report(key, e)):
                delivered += 1
        return delivered

    def snapshot(self) -> SubscriptionSnapshot:
        """当前全部订阅键的时点快照"""
        with self._lock:
            return SubscriptionSnapshot(tuple(self._entries))

    def handlers(self, key: KeyLike) -> List[MessageHandler]:
        key = _as_key(key)
        with self._lock:
            return list(self._entries.get(key.key, {}).values())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, (SubscriptionKey, str)):
            return False
        with self._lock:
            return _as_key(key).key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _report(self, key: SubscriptionKey, error: BaseException) -> None:
        if self._on_handler_error is None:
            return
        try:
            self._on_handler_error(key, error)
        except Exception as e:
            logger.error(f"Registry: handler error reporter failed: {e}")
