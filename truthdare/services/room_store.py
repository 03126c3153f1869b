"""
Room store
房间存储 - 版本号比较并交换（CAS）提交，并按提交顺序通知订阅者
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from pydantic import BaseModel
from redis.exceptions import WatchError

from truthdare.core.config import settings
from truthdare.models.room import Room

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[int, Optional[Room]], Awaitable[None]]


class StoredRoom(BaseModel):
    """A committed snapshot and its version (versions start at 1; 0 means absent)"""
    version: int
    room: Room


class CommitResult(BaseModel):
    ok: bool
    version: int
    latest: Optional[StoredRoom] = None


class Subscription:
    """
    订阅句柄
    提交时快照被放入队列，由后台任务按顺序交给回调
    """

    def __init__(self, room_id: str, callback: ChangeCallback):
        self.room_id = room_id
        self._callback = callback
        self._queue: "asyncio.Queue[Tuple[int, Optional[Room]]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = asyncio.create_task(self._run())
        self._on_close: Optional[Callable[["Subscription"], Awaitable[None]]] = None
        self.closed = False

    def push(self, version: int, room: Optional[Room]) -> None:
        if not self.closed:
            self._queue.put_nowait((version, room))

    async def _run(self) -> None:
        while True:
            version, room = await self._queue.get()
            try:
                await self._callback(version, room)
            except Exception as e:
                logger.error(f"[STORE] Subscriber callback failed for room {self.room_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued snapshot has been delivered"""
        await self._queue.join()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            await self._on_close(self)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class RoomStore(ABC):
    """Persistence and replication boundary for rooms"""

    @abstractmethod
    async def read(self, room_id: str) -> Optional[StoredRoom]:
        ...

    @abstractmethod
    async def commit(self, room_id: str, expected_version: int, new_room: Optional[Room]) -> CommitResult:
        """
        Commit new_room if the stored version still equals expected_version.
        expected_version=0 requires the room to be absent; new_room=None deletes it.
        """

    @abstractmethod
    async def subscribe(self, room_id: str, callback: ChangeCallback) -> Subscription:
        ...

    @abstractmethod
    async def list_room_ids(self) -> List[str]:
        ...

    async def close(self) -> None:
        pass


class InMemoryRoomStore(RoomStore):
    """进程内房间存储"""

    def __init__(self):
        self._rooms: Dict[str, Tuple[int, Room]] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = asyncio.Lock()

    def _snapshot(self, room_id: str) -> Optional[StoredRoom]:
        entry = self._rooms.get(room_id)
        if entry is None:
            return None
        version, room = entry
        return StoredRoom(version=version, room=room.model_copy(deep=True))

    async def read(self, room_id: str) -> Optional[StoredRoom]:
        async with self._lock:
            return self._snapshot(room_id)

    async def commit(self, room_id: str, expected_version: int, new_room: Optional[Room]) -> CommitResult:
        async with self._lock:
            entry = self._rooms.get(room_id)
            current_version = entry[0] if entry else 0

            if current_version != expected_version:
                logger.debug(
                    f"[STORE] Version conflict on room {room_id}: expected {expected_version}, found {current_version}"
                )
                return CommitResult(ok=False, version=current_version, latest=self._snapshot(room_id))

            if new_room is None:
                if entry is None:
                    return CommitResult(ok=True, version=0)
                del self._rooms[room_id]
                self._notify(room_id, current_version + 1, None)
                return CommitResult(ok=True, version=0)

            version = current_version + 1
            self._rooms[room_id] = (version, new_room.model_copy(deep=True))
            self._notify(room_id, version, new_room)
            return CommitResult(ok=True, version=version)

    def _notify(self, room_id: str, version: int, room: Optional[Room]) -> None:
        for subscription in self._subscribers.get(room_id, []):
            subscription.push(version, room.model_copy(deep=True) if room is not None else None)

    async def subscribe(self, room_id: str, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(room_id, callback)

        async def _remove(sub: Subscription) -> None:
            async with self._lock:
                subscribers = self._subscribers.get(room_id, [])
                if sub in subscribers:
                    subscribers.remove(sub)
                if not subscribers:
                    self._subscribers.pop(room_id, None)

        subscription._on_close = _remove
        async with self._lock:
            self._subscribers.setdefault(room_id, []).append(subscription)
        return subscription

    async def list_room_ids(self) -> List[str]:
        async with self._lock:
            return list(self._rooms.keys())

    async def close(self) -> None:
        subscriptions = [s for subs in self._subscribers.values() for s in subs]
        for subscription in subscriptions:
            await subscription.close()


class RedisRoomStore(RoomStore):
    """
    Redis 房间存储
    快照以 JSON 保存；WATCH/MULTI 实现 CAS，提交与 PUBLISH 在同一事务内完成
    """

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.client = client
        self.key_prefix = key_prefix or settings.REDIS_KEY_PREFIX
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.ROOM_IDLE_TIMEOUT
        self._subscriptions: List[Subscription] = []

    def _key(self, room_id: str) -> str:
        return f"{self.key_prefix}:room:{room_id}"

    def _channel(self, room_id: str) -> str:
        return f"{self._key(room_id)}:events"

    @staticmethod
    def _encode(version: int, room: Optional[Room]) -> str:
        return json.dumps({
            "version": version,
            "room": room.model_dump(mode="json") if room is not None else None,
        })

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[StoredRoom]:
        if not raw:
            return None
        data = json.loads(raw)
        if data.get("room") is None:
            return None
        return StoredRoom(version=int(data["version"]), room=Room.model_validate(data["room"]))

    async def read(self, room_id: str) -> Optional[StoredRoom]:
        return self._decode(await self.client.get(self._key(room_id)))

    async def commit(self, room_id: str, expected_version: int, new_room: Optional[Room]) -> CommitResult:
        key = self._key(room_id)
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                current_version = current.version if current else 0

                if current_version != expected_version:
                    await pipe.unwatch()
                    return CommitResult(ok=False, version=current_version, latest=current)

                pipe.multi()
                if new_room is None:
                    version = 0
                    pipe.delete(key)
                    pipe.publish(self._channel(room_id), self._encode(current_version + 1, None))
                else:
                    version = current_version + 1
                    payload = self._encode(version, new_room)
                    if self.ttl_seconds:
                        pipe.set(key, payload, ex=self.ttl_seconds)
                    else:
                        pipe.set(key, payload)
                    pipe.publish(self._channel(room_id), payload)
                await pipe.execute()
                return CommitResult(ok=True, version=version)

            except WatchError:
                logger.info(f"[STORE] Concurrent write detected on room {room_id}")
                latest = await self.read(room_id)
                return CommitResult(ok=False, version=latest.version if latest else 0, latest=latest)

    async def subscribe(self, room_id: str, callback: ChangeCallback) -> Subscription:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self._channel(room_id))
        subscription = Subscription(room_id, callback)

        async def _listen() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = json.loads(message["data"])
                room = Room.model_validate(data["room"]) if data.get("room") is not None else None
                subscription.push(int(data["version"]), room)

        listener = asyncio.create_task(_listen())

        async def _stop(sub: Subscription) -> None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
            await pubsub.unsubscribe(self._channel(room_id))
            await pubsub.aclose()
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        subscription._on_close = _stop
        self._subscriptions.append(subscription)
        return subscription

    async def list_room_ids(self) -> List[str]:
        prefix = f"{self.key_prefix}:room:"
        room_ids = []
        async for key in self.client.scan_iter(match=f"{prefix}*"):
            room_ids.append(key[len(prefix):])
        return room_ids

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
