"""
聊天管理器
聊天消息的长度校验与发送频率限制
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from truthdare.core.config import settings

logger = logging.getLogger(__name__)


class ChatManager:
    """
    聊天管理器
    频率限制按 (room_id, sender_id) 记录在本进程内
    """

    def __init__(
        self,
        max_message_length: Optional[int] = None,
        max_messages_per_minute: Optional[int] = None,
        message_cooldown: Optional[float] = None,
    ):
        self.max_message_length = max_message_length or settings.CHAT_MAX_MESSAGE_LENGTH
        self.max_messages_per_minute = max_messages_per_minute or settings.CHAT_MAX_MESSAGES_PER_MINUTE
        self.message_cooldown = (
            message_cooldown if message_cooldown is not None else settings.CHAT_MESSAGE_COOLDOWN
        )

        # 用户消息时间: (room_id, sender_id) -> List[datetime]
        self.user_message_times: Dict[Tuple[str, str], List[datetime]] = {}

    def validate_text(self, text: Optional[str]) -> Tuple[str, str]:
        """
        Trim and check a message

        Returns:
            tuple[str, str]: (trimmed text, error message or "")
        """
        content = (text or "").strip()
        if not content:
            return "", "Message cannot be empty."
        if len(content) > self.max_message_length:
            return "", f"Message is too long (max {self.max_message_length} characters)."
        return content, ""

    def can_send_message(self, room_id: str, sender_id: str, now: Optional[datetime] = None) -> Tuple[bool, str]:
        """检查发送频率"""
        current_time = now or datetime.now()
        key = (room_id, sender_id)

        # 清理一分钟前的记录
        one_minute_ago = current_time.timestamp() - 60
        times = [t for t in self.user_message_times.get(key, []) if t.timestamp() > one_minute_ago]
        self.user_message_times[key] = times

        if times:
            time_since_last = (current_time - times[-1]).total_seconds()
            if time_since_last < self.message_cooldown:
                return False, f"Please wait {self.message_cooldown - time_since_last:.1f}s before sending another message."

        if len(times) >= self.max_messages_per_minute:
            return False, "You are sending messages too quickly. Try again in a minute."

        return True, ""

    def record_message(self, room_id: str, sender_id: str, now: Optional[datetime] = None) -> None:
        self.user_message_times.setdefault((room_id, sender_id), []).append(now or datetime.now())

    def try_acquire(self, room_id: str, sender_id: str, now: Optional[datetime] = None) -> Tuple[bool, str]:
        """检查并立即占用发送名额；同步执行，并发发送不会同时通过检查"""
        current_time = now or datetime.now()
        allowed, reason = self.can_send_message(room_id, sender_id, current_time)
        if allowed:
            self.record_message(room_id, sender_id, current_time)
        return allowed, reason

    def release(self, room_id: str, sender_id: str, sent_at: datetime) -> None:
        """归还未成功发送的消息占用的名额"""
        times = self.user_message_times.get((room_id, sender_id), [])
        if sent_at in times:
            times.remove(sent_at)

    def clear_room_data(self, room_id: str) -> None:
        """清理房间相关数据"""
        for key in [k for k in self.user_message_times if k[0] == room_id]:
            del self.user_message_times[key]
        logger.debug(f"Cleared chat rate data for room {room_id}")
