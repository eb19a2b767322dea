"""
心跳维护

连接存活期间按固定间隔发送探测；只负责发出探测，不判断连接健康，
断线依赖传输层自身的关闭信号。
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

ProbeSender = Callable[[], Awaitable[None]]


class HeartbeatMonitor:
    """周期性发送 ping 探测"""

    def __init__(self, interval: float = 30.0):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.last_probe_at: float = 0
        self.last_pong_at: float = 0
        self.probes_sent: int = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, send_probe: ProbeSender) -> None:
        """开始发送探测 (已在运行时先停止旧任务)"""
        self.stop()
        self._task = asyncio.create_task(self._probe_loop(send_probe))

    def stop(self) -> None:
        """停止探测"""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def record_pong(self) -> None:
        """记录收到的存活响应"""
        self.last_pong_at = time.time()

    async def _probe_loop(self, send_probe: ProbeSender) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await send_probe()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Heartbeat probe failed, stopping: {e}")
                break

            self.last_probe_at = time.time()
            self.probes_sent += 1
            logger.debug("Heartbeat: sent ping")
