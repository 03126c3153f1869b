# Domain models
from .room import (
    GameMode, QuestionType, GameState, ChatMessageType, QuestionOrigin,
    Player, Question, ChatMessage, QuestionHistory, Room, RoomSession,
    ACTIVE_STATES, ANSWERABLE_STATES, SYSTEM_NICKNAME
)

__all__ = [
    "GameMode", "QuestionType", "GameState", "ChatMessageType", "QuestionOrigin",
    "Player", "Question", "ChatMessage", "QuestionHistory", "Room", "RoomSession",
    "ACTIVE_STATES", "ANSWERABLE_STATES", "SYSTEM_NICKNAME"
]
