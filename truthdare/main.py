"""
FastAPI main application entry point
真心话大冒险房间服务主应用入口
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from truthdare.api.v1.api import api_router
from truthdare.core.config import settings
from truthdare.core.redis_client import close_redis, init_redis, redis_manager
from truthdare.services.background_tasks import background_task_service
from truthdare.services.llm import LLMService
from truthdare.services.room import RoomService
from truthdare.services.room_store import InMemoryRoomStore, RedisRoomStore, RoomStore
from truthdare.utils.resource_monitor import resource_monitor
from truthdare.websocket.connection_manager import connection_manager

LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "logs")


def configure_logging() -> None:
    """控制台 + logs/app.log；压低 HTTP 客户端的噪音"""
    os.makedirs(LOG_DIR, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=settings.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(os.path.join(LOG_DIR, "app.log"), encoding="utf-8"),
        ],
    )
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_logging()
logger = logging.getLogger(__name__)


async def build_room_store() -> RoomStore:
    """按配置创建房间存储；Redis 不可用时退回进程内存储"""
    if settings.ROOM_STORE_BACKEND == "redis":
        if await init_redis():
            logger.info("Using Redis room store")
            return RedisRoomStore(await redis_manager.get_client())
        logger.warning("Redis unavailable, falling back to in-memory room store")
    return InMemoryRoomStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting truth-or-dare room service...")

    store = await build_room_store()
    room_service = RoomService(store, capability=LLMService())
    app.state.room_store = store
    app.state.room_service = room_service
    connection_manager.bind_store(store)

    await background_task_service.start_room_cleanup_task(room_service)
    logger.info("Application startup completed")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await background_task_service.stop_room_cleanup_task()
    await connection_manager.close_all()
    await store.close()
    await close_redis()
    logger.info("Application shutdown completed")


app = FastAPI(
    title="Truth or Dare",
    description="Truth or Dare party game rooms with AI-generated prompts and moderated chat",
    version="1.0.0",
    lifespan=lifespan,
    redirect_slashes=False
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "message": "Truth or Dare API",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check with resource usage"""
    usage = resource_monitor.get_current_usage()
    return {
        "status": "degraded" if resource_monitor.is_under_pressure(usage) else "healthy",
        "version": app.version,
        "environment": settings.ENVIRONMENT,
        "store": settings.ROOM_STORE_BACKEND,
        "redis": redis_manager.status()["status"],
        "websocket_connections": connection_manager.get_connection_count(),
        "resource_usage": usage,
    }
