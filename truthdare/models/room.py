"""
Room aggregate models
房间聚合模型 - 玩家、题目、聊天记录与题目历史
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class GameMode(str, Enum):
    """房间模式（封闭枚举，新增模式需同时补充题库）"""
    MINIMAL = "minimal"
    MODERATE = "moderate"


class QuestionType(str, Enum):
    TRUTH = "truth"
    DARE = "dare"


class GameState(str, Enum):
    """游戏状态"""
    WAITING = "waiting"
    IN_PROGRESS = "inProgress"
    PLAYER_CHOOSING = "playerChoosing"
    QUESTION_REVEALED = "questionRevealed"
    AWAITING_ANSWER = "awaitingAnswer"
    GAME_OVER = "gameOver"


# States in which a turn is running
ACTIVE_STATES = frozenset({
    GameState.IN_PROGRESS,
    GameState.PLAYER_CHOOSING,
    GameState.QUESTION_REVEALED,
    GameState.AWAITING_ANSWER,
})

# States that may carry a current question
ANSWERABLE_STATES = frozenset({
    GameState.QUESTION_REVEALED,
    GameState.AWAITING_ANSWER,
})


class ChatMessageType(str, Enum):
    MESSAGE = "message"
    TRUTH_ANSWER = "truthAnswer"
    DARE_RESULT = "dareResult"
    SYSTEM = "system"
    PLAYER_JOIN = "playerJoin"
    PLAYER_LEAVE = "playerLeave"
    TURN_CHANGE = "turnChange"


class QuestionOrigin(str, Enum):
    """题目来源"""
    GENERATED = "generated"
    PRELOADED = "preloaded"
    EXHAUSTED = "exhausted"


SYSTEM_NICKNAME = "System"


def new_id() -> str:
    return uuid.uuid4().hex


class Player(BaseModel):
    """房间内的玩家"""
    id: str = Field(default_factory=new_id)
    nickname: str
    is_host: bool = False
    score: int = Field(default=0, ge=0)


class Question(BaseModel):
    """Truth or dare prompt, immutable once created"""
    id: str
    text: str
    type: QuestionType
    origin: QuestionOrigin = QuestionOrigin.PRELOADED

    model_config = {"frozen": True}


class ChatMessage(BaseModel):
    """聊天记录条目（只追加，不修改）"""
    id: str = Field(default_factory=new_id)
    sender_id: Optional[str] = None
    sender_nickname: str = SYSTEM_NICKNAME
    text: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    type: ChatMessageType = ChatMessageType.MESSAGE

    model_config = {"frozen": True}

    @classmethod
    def system(cls, text: str, type: ChatMessageType = ChatMessageType.SYSTEM) -> "ChatMessage":
        return cls(text=text, type=type)


class QuestionHistory(BaseModel):
    """Question texts already shown to one player, per type"""
    truths: List[str] = Field(default_factory=list)
    dares: List[str] = Field(default_factory=list)

    def seen(self, question_type: QuestionType) -> List[str]:
        return self.truths if question_type == QuestionType.TRUTH else self.dares

    def record(self, question_type: QuestionType, text: str) -> bool:
        """Add text once; returns False when it was already recorded"""
        seen = self.seen(question_type)
        if text in seen:
            return False
        seen.append(text)
        return True


class Room(BaseModel):
    """
    Room aggregate
    房间聚合根 - 所有变更都通过 RoomService 以整体快照提交
    """
    id: str
    mode: GameMode
    players: List[Player] = Field(default_factory=list)
    current_player_id: Optional[str] = None
    host_id: Optional[str] = None
    game_state: GameState = GameState.WAITING
    current_question: Optional[Question] = None
    round: int = 0
    chat_messages: List[ChatMessage] = Field(default_factory=list)
    player_question_history: Dict[str, QuestionHistory] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_activity: datetime = Field(default_factory=datetime.utcnow)

    def get_player(self, player_id: Optional[str]) -> Optional[Player]:
        if player_id is None:
            return None
        return next((p for p in self.players if p.id == player_id), None)

    def find_by_nickname(self, nickname: str) -> Optional[Player]:
        wanted = nickname.lower()
        return next((p for p in self.players if p.nickname.lower() == wanted), None)

    @property
    def current_player(self) -> Optional[Player]:
        return self.get_player(self.current_player_id)

    @property
    def is_active(self) -> bool:
        return self.game_state in ACTIVE_STATES

    def append_chat(self, message: ChatMessage) -> None:
        self.chat_messages.append(message)

    def touch(self) -> None:
        self.last_activity = datetime.utcnow()


class RoomSession(BaseModel):
    """Result of create/join: the room code and the caller's player record"""
    room_id: str
    player: Player
