# Pydantic schemas
from .room import (
    RoomCreateRequest, RoomJoinRequest, PlayerActionRequest, ChoiceRequest,
    AnswerRequest, ChatRequest, SessionResponse, RoomResponse, ChatResponse,
    LeaveResponse
)

__all__ = [
    "RoomCreateRequest", "RoomJoinRequest", "PlayerActionRequest", "ChoiceRequest",
    "AnswerRequest", "ChatRequest", "SessionResponse", "RoomResponse", "ChatResponse",
    "LeaveResponse"
]
