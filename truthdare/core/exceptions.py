"""
Game error hierarchy
游戏错误类型 - 每个错误携带简短可读的提示与 HTTP 状态码
"""

from typing import Optional


class GameError(Exception):
    """Base class for errors reported to the caller of a room operation"""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(GameError):
    """Bad input shape (nickname length, room code format, empty text)"""

    status_code = 400
    default_message = "Invalid input"


class NotFoundError(GameError):
    status_code = 404
    default_message = "Not found"


class RoomNotFoundError(NotFoundError):
    default_message = "Room not found."


class PlayerNotFoundError(NotFoundError):
    default_message = "Player not found in this room."


class ConflictError(GameError):
    """Operation is not valid for the current room state"""

    status_code = 409
    default_message = "Operation not allowed right now"


class GameAlreadyStartedError(ConflictError):
    default_message = "Game already in progress."


class InvalidStateError(ConflictError):
    default_message = "That action is not available in the current game state."


class NotYourTurnError(ConflictError):
    default_message = "It is not your turn."


class NotHostError(ConflictError):
    default_message = "Only the host can do that."


class ConcurrentUpdateError(ConflictError):
    """Commit retries exhausted against concurrent writers; safe to retry"""

    default_message = "The room changed while your action was applied. Please try again."


class CapacityError(GameError):
    status_code = 409
    default_message = "Capacity exceeded"


class NicknameTakenError(CapacityError):
    default_message = "Nickname already taken in this room."


class RoomFullError(CapacityError):
    default_message = "Room is full."


class RateLimitedError(CapacityError):
    status_code = 429
    default_message = "You are sending messages too quickly."


class ExternalServiceError(GameError):
    """
    Generation or moderation call failed
    外部 AI 服务调用失败 - 只在发起调用的组件内部处理，不会传递给调用方
    """

    status_code = 502
    default_message = "External AI service unavailable"
