"""
Room store tests
房间存储测试 - CAS 提交与订阅通知顺序
"""

import asyncio

import pytest

from truthdare.models.room import GameMode, Player, Room
from truthdare.services.room_store import InMemoryRoomStore, RedisRoomStore


def make_room(room_id="ABCDEF", nickname="Alex"):
    host = Player(nickname=nickname, is_host=True)
    return Room(id=room_id, mode=GameMode.MINIMAL, players=[host], host_id=host.id)


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, version, room):
        self.events.append((version, room.round if room is not None else None))


async def test_create_requires_absent_room():
    store = InMemoryRoomStore()
    first = await store.commit("ABCDEF", 0, make_room())
    assert first.ok and first.version == 1

    second = await store.commit("ABCDEF", 0, make_room(nickname="Other"))
    assert not second.ok
    assert second.version == 1
    assert second.latest.room.players[0].nickname == "Alex"


async def test_stale_version_is_rejected_with_latest_snapshot():
    store = InMemoryRoomStore()
    await store.commit("ABCDEF", 0, make_room())
    stored = await store.read("ABCDEF")

    stored.room.round = 1
    assert (await store.commit("ABCDEF", stored.version, stored.room)).ok

    stale = stored.room.model_copy(deep=True)
    stale.round = 99
    result = await store.commit("ABCDEF", stored.version, stale)

    assert not result.ok
    assert result.version == 2
    assert result.latest.room.round == 1
    assert (await store.read("ABCDEF")).room.round == 1


async def test_reads_are_isolated_copies():
    store = InMemoryRoomStore()
    room = make_room()
    await store.commit("ABCDEF", 0, room)

    room.round = 42
    stored = await store.read("ABCDEF")
    stored.room.players.append(Player(nickname="Sneaky"))

    again = await store.read("ABCDEF")
    assert again.room.round == 0
    assert len(again.room.players) == 1


async def test_delete_and_recreate():
    store = InMemoryRoomStore()
    await store.commit("ABCDEF", 0, make_room())

    deleted = await store.commit("ABCDEF", 1, None)
    assert deleted.ok
    assert await store.read("ABCDEF") is None
    assert await store.list_room_ids() == []

    recreated = await store.commit("ABCDEF", 0, make_room())
    assert recreated.ok and recreated.version == 1


async def test_subscribers_see_commits_in_order():
    store = InMemoryRoomStore()
    recorder = Recorder()
    subscription = await store.subscribe("ABCDEF", recorder)

    await store.commit("ABCDEF", 0, make_room())
    for version in range(1, 4):
        stored = await store.read("ABCDEF")
        stored.room.round = version
        await store.commit("ABCDEF", stored.version, stored.room)
    await store.commit("ABCDEF", 4, None)

    await subscription.drain()
    assert recorder.events == [(1, 0), (2, 1), (3, 2), (4, 3), (5, None)]
    await subscription.close()


async def test_rejected_commit_is_not_published():
    store = InMemoryRoomStore()
    recorder = Recorder()
    subscription = await store.subscribe("ABCDEF", recorder)

    await store.commit("ABCDEF", 0, make_room())
    await store.commit("ABCDEF", 0, make_room())
    await subscription.drain()

    assert recorder.events == [(1, 0)]
    await subscription.close()


async def test_closed_subscription_stops_delivery():
    store = InMemoryRoomStore()
    recorder = Recorder()
    subscription = await store.subscribe("ABCDEF", recorder)
    await subscription.close()

    await store.commit("ABCDEF", 0, make_room())
    await asyncio.sleep(0)

    assert recorder.events == []
    assert subscription.closed


async def test_failing_subscriber_does_not_block_later_snapshots():
    store = InMemoryRoomStore()
    seen = []

    async def flaky(version, room):
        seen.append(version)
        if version == 1:
            raise RuntimeError("socket gone")

    subscription = await store.subscribe("ABCDEF", flaky)
    await store.commit("ABCDEF", 0, make_room())
    await store.commit("ABCDEF", 1, make_room())
    await subscription.drain()

    assert seen == [1, 2]
    await subscription.close()


async def test_list_room_ids():
    store = InMemoryRoomStore()
    await store.commit("AAAAAA", 0, make_room("AAAAAA"))
    await store.commit("BBBBBB", 0, make_room("BBBBBB"))
    assert sorted(await store.list_room_ids()) == ["AAAAAA", "BBBBBB"]


class TestRedisEncoding:
    """Redis 快照编码（不需要 Redis 服务）"""

    def test_keys_use_prefix(self):
        store = RedisRoomStore(client=None, key_prefix="test", ttl_seconds=60)
        assert store._key("ABCDEF") == "test:room:ABCDEF"
        assert store._channel("ABCDEF") == "test:room:ABCDEF:events"

    def test_encode_decode(self):
        room = make_room()
        decoded = RedisRoomStore._decode(RedisRoomStore._encode(3, room))
        assert decoded.version == 3
        assert decoded.room == room

    @pytest.mark.parametrize("raw", [None, "", '{"version": 4, "room": null}'])
    def test_absent_room_decodes_to_none(self, raw):
        assert RedisRoomStore._decode(raw) is None
