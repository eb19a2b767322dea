"""
重连调度器

指数退避: delay = base_delay * 2^min(attempt, cap_exponent)
超过最大次数后报告耗尽，不再调度。
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ReconnectScheduler:
    """拥有重连计数器，延迟后触发回调，可取消"""

    def __init__(
        self,
        base_delay: float = 5.0,
        max_attempts: int = 10,
        cap_exponent: int = 5,
        name: str = "stream",
    ):
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.cap_exponent = cap_exponent
        self.name = name

        self._attempts = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Future] = None

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._attempts >= self.max_attempts

    @property
    def pending(self) -> bool:
        """是否有尚未触发的调度"""
        return self._handle is not None

    def next_delay(self) -> float:
        """下一次重连的等待时间 (秒)"""
        return self.base_delay * (2 ** min(self._attempts, self.cap_exponent))

    def schedule_retry(self, callback: Callable[[], Any]) -> Optional[float]:
        """
        延迟后调用 callback (可为协程函数)

        Returns:
            本次延迟秒数; 次数耗尽时返回 None 且不调度
        """
        if self.exhausted:
            logger.critical(f"{self.name}: Max reconnect attempts reached ({self.max_attempts})")
            return None

        delay = self.next_delay()
        self._attempts += 1

        if self._handle is not None:
            self._handle.cancel()

        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, callback)

        logger.info(
            f"{self.name}: Reconnect attempt {self._attempts}/{self.max_attempts}, "
            f"waiting {delay:.1f}s"
        )
        return delay

    def reset(self) -> None:
        """连接成功后清零计数"""
        self._attempts = 0

    def cancel(self) -> None:
        """取消尚未触发的调度及正在进行的重连"""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        task = self._task
        self._task = None
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()

    def _fire(self, callback: Callable[[], Any]) -> None:
        self._handle = None
        try:
            result = callback()
        except Exception as e:
            logger.error(f"{self.name}: Reconnect callback failed: {e}")
            return

        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        if self._task is task:
            self._task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{self.name}: Reconnect failed: {exc}")
