"""
WebSocket连接管理器
管理玩家WebSocket连接，并把房间存储提交的每个快照按提交顺序广播给房间内所有连接
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from truthdare.core.config import settings
from truthdare.models.room import Room
from truthdare.services.room_store import RoomStore, Subscription

logger = logging.getLogger(__name__)


def room_state_message(room_id: str, version: int, room: Optional[Room]) -> Dict[str, Any]:
    """Build the message carrying a committed snapshot; room=None means the room was deleted"""
    if room is None:
        return {
            "type": "room_closed",
            "data": {"room_id": room_id, "version": version},
        }
    return {
        "type": "room_state",
        "data": {"version": version, "room": room.model_dump(mode="json")},
    }


class ConnectionManager:
    """
    WebSocket连接管理器
    每个有连接的房间持有一个存储订阅；每个连接只会收到版本号递增的快照
    """

    def __init__(self, store: Optional[RoomStore] = None):
        self.store = store

        # 活跃连接: player_id -> WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

        # 房间连接映射: room_id -> Set[player_id]
        self.room_connections: Dict[str, Set[str]] = {}

        # 玩家房间映射: player_id -> room_id
        self.user_rooms: Dict[str, str] = {}

        # 连接元数据: player_id -> connection_info
        self.connection_metadata: Dict[str, Dict[str, Any]] = {}

        # 房间订阅: room_id -> Subscription
        self.room_subscriptions: Dict[str, Subscription] = {}

        # 已发送的最高快照版本: player_id -> version
        self.last_sent_version: Dict[str, int] = {}

        self.max_connections = settings.MAX_WEBSOCKET_CONNECTIONS
        self.ping_interval = settings.WEBSOCKET_PING_INTERVAL

        self._heartbeat_tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def bind_store(self, store: RoomStore) -> None:
        self.store = store

    async def connect(self, player_id: str, websocket: WebSocket, room_id: str) -> bool:
        """
        建立WebSocket连接并发送当前房间快照
        """
        if len(self.active_connections) >= self.max_connections:
            logger.warning(f"Connection limit reached, rejecting player {player_id}")
            return False

        await websocket.accept()

        # 同一玩家的旧连接先断开
        if player_id in self.active_connections:
            await self.disconnect(player_id, "New connection established")

        self.active_connections[player_id] = websocket
        self.connection_metadata[player_id] = {
            "connected_at": datetime.now(),
            "last_ping": datetime.now(),
            "room_id": room_id,
        }
        self.last_sent_version[player_id] = 0

        # 先订阅再读取，保证读取之后的提交不会漏掉
        await self._join_room(player_id, room_id)
        await self.send_snapshot(player_id, room_id)

        self._start_heartbeat(player_id)
        logger.info(f"Player {player_id} connected to WebSocket in room {room_id}")
        return True

    async def disconnect(self, player_id: str, reason: str = "Connection closed") -> None:
        """断开WebSocket连接"""
        task = self._heartbeat_tasks.pop(player_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        room_id = self.user_rooms.pop(player_id, None)
        if room_id is not None:
            await self._leave_room(player_id, room_id)

        websocket = self.active_connections.pop(player_id, None)
        if websocket is not None:
            try:
                await websocket.close(code=1000, reason=reason)
            except RuntimeError:
                # 连接可能已经关闭
                pass

        self.connection_metadata.pop(player_id, None)
        self.last_sent_version.pop(player_id, None)
        logger.info(f"Player {player_id} disconnected: {reason}")

    async def _join_room(self, player_id: str, room_id: str) -> None:
        async with self._lock:
            self.room_connections.setdefault(room_id, set()).add(player_id)
            self.user_rooms[player_id] = room_id
            if room_id not in self.room_subscriptions and self.store is not None:
                self.room_subscriptions[room_id] = await self.store.subscribe(
                    room_id, self._make_room_listener(room_id)
                )
                logger.debug(f"[BROADCAST] Subscribed to room {room_id}")

    async def _leave_room(self, player_id: str, room_id: str) -> None:
        subscription = None
        async with self._lock:
            members = self.room_connections.get(room_id)
            if members is not None:
                members.discard(player_id)
                if not members:
                    del self.room_connections[room_id]
                    subscription = self.room_subscriptions.pop(room_id, None)

        if subscription is not None:
            await subscription.close()
            logger.debug(f"[BROADCAST] Unsubscribed from room {room_id}")

    def _make_room_listener(self, room_id: str):
        async def on_change(version: int, room: Optional[Room]) -> None:
            await self.broadcast_snapshot(room_id, version, room)
        return on_change

    async def send_snapshot(self, player_id: str, room_id: str) -> bool:
        """发送当前已提交的房间快照"""
        if self.store is None:
            return False
        stored = await self.store.read(room_id)
        if stored is None:
            return await self.send_to_user(player_id, room_state_message(room_id, 0, None))
        return await self.send_room_state(player_id, room_id, stored.version, stored.room)

    async def send_room_state(self, player_id: str, room_id: str, version: int, room: Optional[Room]) -> bool:
        """只发送比已发送版本更新的快照"""
        if room is not None and version <= self.last_sent_version.get(player_id, 0):
            return False
        sent = await self.send_to_user(player_id, room_state_message(room_id, version, room))
        if sent:
            # 房间删除后版本号会重新开始
            self.last_sent_version[player_id] = version if room is not None else 0
        return sent

    async def broadcast_snapshot(self, room_id: str, version: int, room: Optional[Room]) -> int:
        """广播房间快照到房间所有连接"""
        players = list(self.room_connections.get(room_id, set()))
        sent_count = 0
        for player_id in players:
            if await self.send_room_state(player_id, room_id, version, room):
                sent_count += 1

        logger.info(f"[BROADCAST] Room {room_id} version {version} sent to {sent_count}/{len(players)} connections")
        return sent_count

    async def send_to_user(self, player_id: str, message: dict) -> bool:
        """发送消息给特定玩家"""
        websocket = self.active_connections.get(player_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            logger.warning(f"Error sending message to player {player_id}: {e}")
            return False

    def touch(self, player_id: str) -> None:
        """记录客户端心跳"""
        if player_id in self.connection_metadata:
            self.connection_metadata[player_id]["last_ping"] = datetime.now()

    def _start_heartbeat(self, player_id: str) -> None:
        """启动心跳监控"""
        async def heartbeat_task():
            try:
                while player_id in self.active_connections:
                    await asyncio.sleep(self.ping_interval)
                    if player_id not in self.active_connections:
                        break

                    last_ping = self.connection_metadata.get(player_id, {}).get("last_ping")
                    if last_ping and (datetime.now() - last_ping).total_seconds() > self.ping_interval * 3:
                        logger.warning(f"Player {player_id} heartbeat timeout, disconnecting")
                        await self.disconnect(player_id, "Heartbeat timeout")
                        break

                    await self.send_to_user(player_id, {
                        "type": "ping",
                        "data": {"timestamp": datetime.now().isoformat()},
                    })
            except asyncio.CancelledError:
                logger.debug(f"Heartbeat task cancelled for player {player_id}")

        existing = self._heartbeat_tasks.get(player_id)
        if existing is not None:
            existing.cancel()
        self._heartbeat_tasks[player_id] = asyncio.create_task(heartbeat_task())

    async def close_all(self) -> None:
        for player_id in list(self.active_connections):
            await self.disconnect(player_id, "Server shutting down")
        for subscription in list(self.room_subscriptions.values()):
            await subscription.close()
        self.room_subscriptions.clear()

    def get_connection_count(self) -> int:
        """获取当前连接数"""
        return len(self.active_connections)

    def get_room_count(self) -> int:
        """获取当前有连接的房间数"""
        return len(self.room_connections)

    def get_room_users(self, room_id: str) -> List[str]:
        """获取房间内的连接列表"""
        return list(self.room_connections.get(room_id, set()))

    def is_user_connected(self, player_id: str) -> bool:
        return player_id in self.active_connections


# 全局连接管理器实例
connection_manager = ConnectionManager()
