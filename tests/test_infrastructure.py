"""
Infrastructure tests
基础设施测试
"""

import asyncio
from datetime import datetime, timedelta

import pytest
import redis.asyncio as redis

from conftest import FakeAI, make_service
from truthdare.core import exceptions
from truthdare.core.config import Settings, settings
from truthdare.core.redis_client import RedisManager, make_key
from truthdare.services.audit_logger import AuditEventType, AuditLogger
from truthdare.services.background_tasks import BackgroundTaskService
from truthdare.services.chat_manager import ChatManager
from truthdare.utils.resource_monitor import ResourceMonitor


class TestInfrastructure:
    """Test basic infrastructure setup"""

    def test_app_creation(self):
        """Test that FastAPI app is created successfully"""
        from truthdare.main import app
        assert app is not None
        assert "Truth or Dare" in app.title
        assert app.version == "1.0.0"

    def test_settings_loaded(self):
        """Test that settings are loaded correctly"""
        assert settings is not None
        assert settings.REDIS_URL is not None
        assert settings.NICKNAME_MIN_LENGTH == 3
        assert settings.NICKNAME_MAX_LENGTH == 15
        assert settings.MODERATION_FAIL_OPEN is True

    def test_fallback_models_list(self):
        config = Settings(AI_FALLBACK_MODELS="model-a, ,model-b")
        assert config.fallback_models_list == ["model-a", "model-b"]
        assert Settings(AI_FALLBACK_MODELS="").fallback_models_list == []

    @pytest.mark.parametrize("error_cls,status_code", [
        (exceptions.ValidationError, 400),
        (exceptions.RoomNotFoundError, 404),
        (exceptions.PlayerNotFoundError, 404),
        (exceptions.GameAlreadyStartedError, 409),
        (exceptions.NotYourTurnError, 409),
        (exceptions.ConcurrentUpdateError, 409),
        (exceptions.RoomFullError, 409),
        (exceptions.RateLimitedError, 429),
        (exceptions.ExternalServiceError, 502),
    ])
    def test_error_status_codes(self, error_cls, status_code):
        error = error_cls()
        assert isinstance(error, exceptions.GameError)
        assert error.status_code == status_code
        assert error.message == error_cls.default_message

    def test_error_custom_message(self):
        error = exceptions.ConflictError("Need at least 2 players to start.")
        assert str(error) == "Need at least 2 players to start."


class TestChatManager:
    """聊天管理器测试"""

    def test_validate_text(self):
        manager = ChatManager(max_message_length=10)
        assert manager.validate_text("  hi  ") == ("hi", "")
        assert manager.validate_text("   ")[1]
        assert manager.validate_text(None)[1]
        assert manager.validate_text("x" * 11)[1]
        assert manager.validate_text("x" * 10) == ("x" * 10, "")

    def test_cooldown(self):
        manager = ChatManager(message_cooldown=2, max_messages_per_minute=100)
        now = datetime.now()
        assert manager.can_send_message("ROOM01", "p1", now)[0]
        manager.record_message("ROOM01", "p1", now)

        allowed, reason = manager.can_send_message("ROOM01", "p1", now + timedelta(seconds=0.5))
        assert not allowed
        assert reason
        assert manager.can_send_message("ROOM01", "p2", now)[0]
        assert manager.can_send_message("ROOM01", "p1", now + timedelta(seconds=3))[0]

    def test_per_minute_limit(self):
        manager = ChatManager(message_cooldown=0, max_messages_per_minute=3)
        for _ in range(3):
            assert manager.can_send_message("ROOM01", "p1")[0]
            manager.record_message("ROOM01", "p1")
        assert not manager.can_send_message("ROOM01", "p1")[0]

    def test_try_acquire_and_release(self):
        manager = ChatManager(message_cooldown=10, max_messages_per_minute=1)
        now = datetime.now()
        assert manager.try_acquire("ROOM01", "p1", now)[0]
        assert not manager.try_acquire("ROOM01", "p1", now)[0]
        manager.release("ROOM01", "p1", now)
        assert manager.try_acquire("ROOM01", "p1", now)[0]

    def test_clear_room_data(self):
        manager = ChatManager(message_cooldown=60)
        manager.record_message("ROOM01", "p1")
        manager.record_message("ROOM02", "p1")
        manager.clear_room_data("ROOM01")
        assert manager.can_send_message("ROOM01", "p1")[0]
        assert not manager.can_send_message("ROOM02", "p1")[0]


class TestAuditLogger:
    """审计日志测试"""

    def test_sanitize_data(self):
        audit = AuditLogger()
        sanitized = audit._sanitize_data({
            "nickname": "Alex",
            "api_key": "sk-123",
            "nested": {"Token": "abc", "mode": "minimal"},
            "items": [{"secret": "x"}, 3],
        })
        assert sanitized["nickname"] == "Alex"
        assert sanitized["api_key"] == "***REDACTED***"
        assert sanitized["nested"] == {"Token": "***REDACTED***", "mode": "minimal"}
        assert sanitized["items"] == [{"secret": "***REDACTED***"}, 3]

    async def test_log_event_and_query(self):
        audit = AuditLogger(max_entries=10)
        assert await audit.log_event(AuditEventType.ROOM_CREATE, room_id="ROOM01", player_id="p1")
        await audit.log_event(AuditEventType.ROOM_JOIN, room_id="ROOM01", player_id="p2")
        await audit.log_event(AuditEventType.ROOM_JOIN, room_id="ROOM02", player_id="p3")
        await audit.log_event(
            AuditEventType.MODERATION_ERROR, room_id="ROOM01", details={"error": "timeout"}, success=False
        )

        entries = audit.get_room_audit_log("ROOM01")
        assert [e["event_type"] for e in entries] == ["room_create", "room_join", "moderation_error"]
        assert entries[-1]["success"] is False

        joins = audit.get_room_audit_log("ROOM01", event_types=[AuditEventType.ROOM_JOIN])
        assert [e["player_id"] for e in joins] == ["p2"]
        assert len(audit.get_room_audit_log("ROOM01", limit=1)) == 1

    async def test_bounded_history(self):
        audit = AuditLogger(max_entries=3)
        for i in range(5):
            await audit.log_event(AuditEventType.ROOM_JOIN, room_id="ROOM01", player_id=f"p{i}")
        assert [e["player_id"] for e in audit.get_room_audit_log("ROOM01")] == ["p2", "p3", "p4"]


class TestRedisManager:
    """Redis 连接管理（不需要真实 Redis）"""

    def test_make_key(self):
        assert make_key("audit", "room_join", 20260101) == f"{settings.REDIS_KEY_PREFIX}:audit:room_join:20260101"

    async def test_unconnected_manager(self):
        manager = RedisManager(max_reconnects=0)
        assert not manager.is_connected
        assert manager.status()["status"] == "disabled"
        assert not await manager.ensure_connected()
        with pytest.raises(RuntimeError):
            await manager.get_client()

    async def test_retry_keeps_the_shared_client(self):
        class FlakyClient:
            def __init__(self):
                self.pings = 0

            async def ping(self):
                self.pings += 1
                if self.pings == 1:
                    raise redis.ConnectionError("connection reset")
                return True

        manager = RedisManager(max_reconnects=2, backoff=0)
        client = FlakyClient()
        manager.client = client

        assert await manager.ensure_connected()
        assert manager.client is client
        assert client.pings == 2
        assert manager.reconnects == 0
        assert await manager.get_client() is client


class TestResourceMonitor:
    """资源监控测试"""

    def test_current_usage(self):
        usage = ResourceMonitor().get_current_usage()
        assert usage["memory_mb"] > 0
        assert usage["memory_limit_mb"] == settings.MAX_MEMORY_MB
        assert "cpu_percent" in usage

    def test_pressure(self, monkeypatch):
        monitor = ResourceMonitor()
        monkeypatch.setattr(monitor, "get_current_usage", lambda: {"memory_mb": 10_000, "cpu_percent": 0})
        assert monitor.is_under_pressure()
        monkeypatch.setattr(monitor, "get_current_usage", lambda: {"memory_mb": 1, "cpu_percent": 1})
        assert not monitor.is_under_pressure()

    def test_pressure_from_given_usage(self):
        monitor = ResourceMonitor(max_memory_mb=100, max_cpu_percent=50)
        assert monitor.is_under_pressure({"memory_mb": 50, "cpu_percent": 75})
        assert not monitor.is_under_pressure({"memory_mb": 50, "cpu_percent": 25})


class TestBackgroundTasks:
    """后台清理任务测试"""

    async def test_cleanup_loop_reaps_idle_rooms(self, store):
        service = make_service(FakeAI(), store)
        session = await service.create_room("Alex", "minimal")
        tasks = BackgroundTaskService()

        await tasks.start_room_cleanup_task(service, interval_seconds=60, max_idle_seconds=-1)
        assert tasks.is_running
        for _ in range(20):
            if await store.read(session.room_id) is None:
                break
            await asyncio.sleep(0.01)
        await tasks.stop_room_cleanup_task()

        assert not tasks.is_running
        assert await store.read(session.room_id) is None

    async def test_start_twice_keeps_single_task(self, store):
        service = make_service(FakeAI(), store)
        tasks = BackgroundTaskService()
        await tasks.start_room_cleanup_task(service, interval_seconds=60)
        first = tasks.cleanup_task
        await tasks.start_room_cleanup_task(service, interval_seconds=60)
        assert tasks.cleanup_task is first
        await tasks.stop_room_cleanup_task()

    async def test_cleanup_failure_is_logged_not_raised(self):
        class BrokenService:
            async def reap_idle_rooms(self, max_idle):
                raise RuntimeError("store down")

        assert await BackgroundTaskService.cleanup_once(BrokenService(), 60) == 0
