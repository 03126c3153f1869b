"""
Room Pydantic schemas
房间接口请求与响应模型
"""

from typing import Optional

from pydantic import BaseModel, Field

from truthdare.models.room import ChatMessage, GameMode, Player, QuestionType, Room


class RoomCreateRequest(BaseModel):
    """创建房间请求模型"""
    nickname: str = Field(..., description="房主昵称（3-15个字符）")
    mode: GameMode = Field(default=GameMode.MINIMAL, description="房间模式")


class RoomJoinRequest(BaseModel):
    """加入房间请求"""
    nickname: str = Field(..., description="玩家昵称（3-15个字符）")


class PlayerActionRequest(BaseModel):
    """需要标明操作者的请求（离开、开始、结束等）"""
    player_id: str = Field(..., min_length=1, description="操作玩家ID")


class ChoiceRequest(PlayerActionRequest):
    type: QuestionType = Field(..., description="truth 或 dare")


class AnswerRequest(PlayerActionRequest):
    answer_text: str = Field(default="", description="回答内容")
    is_dare_successful: Optional[bool] = Field(None, description="大冒险是否完成")


class ChatRequest(BaseModel):
    """聊天消息请求"""
    player_id: str
    nickname: Optional[str] = None
    text: str


class SessionResponse(BaseModel):
    """创建/加入房间响应：房间号、当前玩家与房间快照"""
    room_id: str
    player: Player
    room: Room


class RoomResponse(BaseModel):
    """房间快照响应"""
    room: Optional[Room] = None
    message: str = ""


class ChatResponse(BaseModel):
    message: ChatMessage
    flagged: bool = False
    warning: Optional[str] = None


class LeaveResponse(BaseModel):
    """离开房间响应；最后一名玩家离开时房间被删除"""
    message: str
    room_closed: bool = False
