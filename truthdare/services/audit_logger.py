"""
Audit logging service
审计日志服务 - 记录房间生命周期事件，敏感字段脱敏
"""

import json
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from truthdare.core.redis_client import make_key, redis_manager

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"


class AuditEventType(str, Enum):
    """审计事件类型"""
    ROOM_CREATE = "room_create"
    ROOM_JOIN = "room_join"
    ROOM_LEAVE = "room_leave"
    ROOM_DELETE = "room_delete"
    GAME_START = "game_start"
    GAME_FINISH = "game_finish"
    QUESTION_REVEAL = "question_reveal"
    ANSWER_SUBMIT = "answer_submit"
    CHAT_FLAGGED = "chat_flagged"
    MODERATION_ERROR = "moderation_error"
    QUESTION_FALLBACK = "question_fallback"


class AuditLogger:
    """
    审计日志记录器
    最近的条目保存在进程内环形缓冲区；Redis 已连接时按天写入列表
    """

    sensitive_fields = ("password", "token", "secret", "api_key", "private_key")

    def __init__(self, max_entries: int = 1000, redis_ttl: int = 7 * 24 * 3600):
        self.entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self.redis_ttl = redis_ttl

    def _is_sensitive(self, key: str) -> bool:
        lowered = key.lower()
        return any(field in lowered for field in self.sensitive_fields)

    def _sanitize_data(self, data: Any) -> Any:
        """递归脱敏 dict/list 中的敏感字段"""
        if isinstance(data, dict):
            return {
                key: REDACTED if self._is_sensitive(str(key)) else self._sanitize_data(value)
                for key, value in data.items()
            }
        if isinstance(data, list):
            return [self._sanitize_data(item) for item in data]
        return data

    async def log_event(
        self,
        event_type: AuditEventType,
        room_id: Optional[str] = None,
        player_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True
    ) -> bool:
        """
        记录审计事件；失败只写日志，不影响调用方

        Returns:
            bool: 是否记录成功
        """
        entry = {
            "event_type": event_type.value,
            "room_id": room_id,
            "player_id": player_id,
            "timestamp": datetime.utcnow().isoformat(),
            "success": success,
            "details": self._sanitize_data(details or {}),
        }
        self.entries.append(entry)

        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"[AUDIT] {event_type.value} room={room_id} player={player_id} success={success}")

        if redis_manager.is_connected:
            return await self._mirror_to_redis(entry)
        return True

    async def _mirror_to_redis(self, entry: Dict[str, Any]) -> bool:
        key = make_key("audit", entry["event_type"], datetime.utcnow().strftime("%Y%m%d"))
        try:
            client = await redis_manager.get_client()
            await client.lpush(key, json.dumps(entry, default=str))
            await client.expire(key, self.redis_ttl)
        except Exception as e:
            logger.error(f"[AUDIT] Failed to mirror audit entry to Redis: {e}")
            return False
        return True

    def get_room_audit_log(
        self,
        room_id: str,
        event_types: Optional[List[AuditEventType]] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """获取房间最近的审计日志（本进程内）"""
        wanted = {et.value for et in event_types} if event_types else None
        logs = [
            entry for entry in self.entries
            if entry["room_id"] == room_id and (wanted is None or entry["event_type"] in wanted)
        ]
        return logs[-limit:]


# 全局审计日志实例
audit_logger = AuditLogger()
