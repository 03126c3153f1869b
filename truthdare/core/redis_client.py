"""
Redis connection management
Redis 连接管理 - 房间存储与审计日志共用一个连接池，断线后有限次数重连
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import redis.asyncio as redis

from truthdare.core.config import settings

logger = logging.getLogger(__name__)


def make_key(*parts: str) -> str:
    """Build a namespaced key, e.g. make_key("room", "ABCDEF") -> "truthdare:room:ABCDEF" """
    return ":".join((settings.REDIS_KEY_PREFIX,) + tuple(str(p) for p in parts))


class RedisManager:
    """
    Redis 连接管理器
    连接失败不会阻止应用启动（开发环境退回进程内存储），生产环境直接报错
    """

    def __init__(self, max_reconnects: int = 3, backoff: float = 1.0, check_interval: float = 30):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = None
        self.max_reconnects = max_reconnects
        self.backoff = backoff
        self.check_interval = check_interval
        self.reconnects = 0
        self.last_ok: float = 0

    @property
    def is_connected(self) -> bool:
        return self.client is not None

    async def connect(self) -> bool:
        """Create the pool and ping once; returns False when Redis is unreachable"""
        self.pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
            retry_on_timeout=True,
            decode_responses=True,
        )
        self.client = redis.Redis(connection_pool=self.pool)

        if await self._ping():
            logger.info(f"[REDIS] Connected to {settings.REDIS_URL}")
            return True

        await self.close()
        if settings.ENVIRONMENT == "production":
            raise RuntimeError(f"Redis is required in production but {settings.REDIS_URL} is unreachable")
        return False

    async def _ping(self) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.ping()
        except (redis.ConnectionError, redis.TimeoutError, OSError) as e:
            logger.warning(f"[REDIS] Ping failed: {e}")
            return False
        self.reconnects = 0
        self.last_ok = time.time()
        return True

    async def ensure_connected(self) -> bool:
        """
        Ping at most every check_interval seconds; retry with backoff on failure.
        The pool is never replaced here; clients handed out earlier stay valid.
        """
        if self.client is None:
            return False
        if time.time() - self.last_ok < self.check_interval:
            return True
        if await self._ping():
            return True

        while self.reconnects < self.max_reconnects:
            self.reconnects += 1
            delay = self.backoff * (2 ** (self.reconnects - 1))
            logger.info(f"[REDIS] Retrying ping ({self.reconnects}/{self.max_reconnects}) in {delay}s")
            await asyncio.sleep(delay)
            if await self._ping():
                return True

        logger.error("[REDIS] Giving up on reconnecting")
        return False

    async def get_client(self) -> redis.Redis:
        if not await self.ensure_connected():
            raise RuntimeError("Redis connection unavailable")
        return self.client

    def status(self) -> Dict[str, Any]:
        return {
            "status": "connected" if self.is_connected else "disabled",
            "reconnects": self.reconnects,
            "last_ok": self.last_ok,
        }

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
        if self.pool is not None:
            await self.pool.aclose()
        self.client = None
        self.pool = None


# 全局 Redis 管理器
redis_manager = RedisManager()


async def init_redis() -> bool:
    return await redis_manager.connect()


async def close_redis():
    await redis_manager.close()
    logger.info("[REDIS] Connections closed")


async def redis_health_check() -> dict:
    """Redis 健康检查"""
    if not redis_manager.is_connected:
        return {"status": "disabled"}
    try:
        healthy = await redis_manager.ensure_connected()
    except (redis.RedisError, RuntimeError) as e:
        return {"status": "error", "error": str(e), "reconnects": redis_manager.reconnects}
    result = redis_manager.status()
    result["status"] = "healthy" if healthy else "unhealthy"
    return result
