"""
API v1 router
API v1 路由配置
"""

from fastapi import APIRouter

from truthdare.api.v1.endpoints import health, rooms, websocket

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(rooms.router, prefix="/rooms", tags=["rooms"])
api_router.include_router(websocket.router, prefix="/ws", tags=["websocket"])
