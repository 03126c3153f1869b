"""
WebSocket endpoints
WebSocket连接端点 - 推送房间快照，接收心跳与聊天消息
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from truthdare.core.exceptions import GameError
from truthdare.services.room import RoomService
from truthdare.websocket.connection_manager import connection_manager

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/{room_id}")
async def websocket_room_endpoint(websocket: WebSocket, room_id: str):
    """
    房间WebSocket连接端点

    连接参数 player_id 必须是房间内的玩家；连接后先收到当前快照，
    之后按提交顺序收到每个新快照
    """
    room_service: RoomService = websocket.app.state.room_service
    player_id: Optional[str] = websocket.query_params.get("player_id")
    connected = False

    try:
        if not player_id:
            await websocket.close(code=4001, reason="player_id is required")
            return

        try:
            room = await room_service.get_room(room_id)
            await room_service.get_player(room.id, player_id)
        except GameError as e:
            logger.warning(f"[WS_CONNECT] Rejected player {player_id} for room {room_id}: {e.message}")
            await websocket.close(code=4004, reason=e.message)
            return

        connected = await connection_manager.connect(player_id, websocket, room.id)
        if not connected:
            await websocket.close(code=4002, reason="Connection limit reached")
            return

        while True:
            try:
                data = await websocket.receive_text()
                message_data = json.loads(data)

                if not isinstance(message_data, dict) or "type" not in message_data:
                    await _send_error(player_id, "Invalid message format")
                    continue

                await handle_websocket_message(room_service, player_id, room.id, message_data)

            except json.JSONDecodeError:
                await _send_error(player_id, "Invalid JSON format")

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for player {player_id} in room {room_id}")

    finally:
        # 只断开连接，不会让玩家离开房间；离开房间需通过 API 调用
        if connected:
            await connection_manager.disconnect(player_id, "Connection closed")


async def _send_error(player_id: str, message: str) -> None:
    await connection_manager.send_to_user(player_id, {
        "type": "error",
        "data": {"message": message}
    })


async def handle_websocket_message(
    room_service: RoomService,
    player_id: str,
    room_id: str,
    message: Dict[str, Any],
) -> None:
    """处理客户端消息"""
    message_type = message.get("type")
    data = message.get("data") or {}

    if message_type == "ping":
        connection_manager.touch(player_id)
        await connection_manager.send_to_user(player_id, {"type": "pong", "data": {}})

    elif message_type == "chat_message":
        try:
            result = await room_service.add_chat_message(
                room_id, player_id, data.get("nickname"), data.get("text")
            )
        except GameError as e:
            await _send_error(player_id, e.message)
            return

        # 消息本身随房间快照广播，这里只把警告告知发送者
        if result.warning:
            await connection_manager.send_to_user(player_id, {
                "type": "warning",
                "data": {"message": result.warning}
            })

    else:
        await _send_error(player_id, f"Unknown message type: {message_type}")
