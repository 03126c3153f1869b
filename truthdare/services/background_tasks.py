"""
Background tasks service
后台任务服务 - 定期清理空闲房间
"""

import asyncio
import logging
from typing import Optional

from truthdare.core.config import settings
from truthdare.services.room import RoomService

logger = logging.getLogger(__name__)


class BackgroundTaskService:
    """后台任务服务类"""

    def __init__(self):
        self.cleanup_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.cleanup_task is not None and not self.cleanup_task.done()

    async def start_room_cleanup_task(
        self,
        room_service: RoomService,
        interval_seconds: Optional[int] = None,
        max_idle_seconds: Optional[int] = None,
    ):
        if self.is_running:
            logger.warning("Room cleanup task is already running")
            return

        interval = interval_seconds or settings.ROOM_CLEANUP_INTERVAL
        max_idle = max_idle_seconds or settings.ROOM_IDLE_TIMEOUT
        self.cleanup_task = asyncio.create_task(self._room_cleanup_loop(room_service, interval, max_idle))
        logger.info(f"Room cleanup task started (interval: {interval}s, idle timeout: {max_idle}s)")

    async def stop_room_cleanup_task(self):
        task, self.cleanup_task = self.cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Room cleanup task stopped")

    @staticmethod
    async def cleanup_once(room_service: RoomService, max_idle: int) -> int:
        """执行一次清理；单次失败只记录日志，不终止循环"""
        try:
            cleaned = await room_service.reap_idle_rooms(max_idle)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Room cleanup run failed: {e}")
            return 0
        if cleaned:
            logger.info(f"Cleaned up {cleaned} idle room(s)")
        return cleaned

    async def _room_cleanup_loop(self, room_service: RoomService, interval: int, max_idle: int):
        while True:
            await self.cleanup_once(room_service, max_idle)
            await asyncio.sleep(interval)


# 全局后台任务服务实例
background_task_service = BackgroundTaskService()
