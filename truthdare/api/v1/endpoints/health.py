"""
Health check endpoints
健康检查端点
"""

from fastapi import APIRouter, Request

from truthdare.core.config import settings
from truthdare.core.redis_client import redis_health_check
from truthdare.websocket.connection_manager import connection_manager

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Basic health check endpoint
    基础健康检查端点
    """
    room_service = request.app.state.room_service
    return {
        "status": "healthy",
        "service": "truthdare-rooms",
        "version": "1.0.0",
        "store": settings.ROOM_STORE_BACKEND,
        "rooms": len(await room_service.list_rooms()),
        "websocket_connections": connection_manager.get_connection_count(),
        "websocket_rooms": connection_manager.get_room_count(),
    }


@router.get("/health/redis")
async def redis_health():
    """
    Redis connection health check
    Redis连接健康检查
    """
    try:
        return await redis_health_check()
    except Exception as e:
        return {
            "status": "error",
            "error": str(e)
        }
