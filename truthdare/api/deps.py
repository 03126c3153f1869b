"""
API dependencies
API 依赖注入 - 从应用状态获取服务，并把游戏错误转换为 HTTP 错误
"""

from fastapi import HTTPException, Request

from truthdare.core.exceptions import GameError
from truthdare.services.room import RoomService


def get_room_service(request: Request) -> RoomService:
    """获取房间服务依赖"""
    return request.app.state.room_service


def to_http_exception(error: GameError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)
