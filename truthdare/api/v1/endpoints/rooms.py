"""
Room API endpoints
房间与回合操作API端点
"""

import logging

from fastapi import APIRouter, Depends, status

from truthdare.api.deps import get_room_service, to_http_exception
from truthdare.core.exceptions import GameError
from truthdare.models.room import Player
from truthdare.schemas.room import (
    AnswerRequest, ChatRequest, ChatResponse, ChoiceRequest, LeaveResponse, PlayerActionRequest,
    RoomCreateRequest, RoomJoinRequest, RoomResponse, SessionResponse,
)
from truthdare.services.room import RoomService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    request: RoomCreateRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """
    创建新房间

    - **nickname**: 房主昵称 (3-15)
    - **mode**: minimal / moderate
    """
    try:
        session = await room_service.create_room(request.nickname, request.mode)
        room = await room_service.get_room(session.room_id)
        return SessionResponse(room_id=session.room_id, player=session.player, room=room)
    except GameError as e:
        raise to_http_exception(e)


@router.get("/{room_id}", response_model=RoomResponse)
async def get_room(room_id: str, room_service: RoomService = Depends(get_room_service)):
    """获取房间快照"""
    try:
        return RoomResponse(room=await room_service.get_room(room_id))
    except GameError as e:
        raise to_http_exception(e)


@router.get("/{room_id}/players/{player_id}", response_model=Player)
async def get_player(room_id: str, player_id: str, room_service: RoomService = Depends(get_room_service)):
    """获取房间内玩家信息"""
    try:
        return await room_service.get_player(room_id, player_id)
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/join", response_model=SessionResponse)
async def join_room(
    room_id: str,
    request: RoomJoinRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """加入房间（仅等待阶段）"""
    try:
        session = await room_service.join_room(room_id, request.nickname)
        room = await room_service.get_room(session.room_id)
        return SessionResponse(room_id=session.room_id, player=session.player, room=room)
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/leave", response_model=LeaveResponse)
async def leave_room(
    room_id: str,
    request: PlayerActionRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """离开房间"""
    try:
        room = await room_service.leave_room(room_id, request.player_id)
    except GameError as e:
        raise to_http_exception(e)

    if room is None:
        return LeaveResponse(message="Left the room. The room was closed.", room_closed=True)
    return LeaveResponse(message="Left the room.")


@router.post("/{room_id}/start", response_model=RoomResponse)
async def start_game(
    room_id: str,
    request: PlayerActionRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """开始游戏（房主）"""
    try:
        return RoomResponse(room=await room_service.start_game(room_id, request.player_id))
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/end", response_model=RoomResponse)
async def end_game(
    room_id: str,
    request: PlayerActionRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """结束游戏（房主）"""
    try:
        return RoomResponse(room=await room_service.end_game(room_id, request.player_id))
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/choice", response_model=RoomResponse)
async def select_truth_or_dare(
    room_id: str,
    request: ChoiceRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """选择真心话或大冒险"""
    try:
        room = await room_service.select_truth_or_dare(room_id, request.type, request.player_id)
        return RoomResponse(room=room)
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/answer/begin", response_model=RoomResponse)
async def begin_answer(
    room_id: str,
    request: PlayerActionRequest,
    room_service: RoomService = Depends(get_room_service)
):
    try:
        return RoomResponse(room=await room_service.begin_answer(room_id, request.player_id))
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/answer", response_model=RoomResponse)
async def submit_answer(
    room_id: str,
    request: AnswerRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """提交答案并进入下一回合"""
    try:
        room = await room_service.submit_answer(
            room_id,
            request.answer_text,
            is_dare_successful=request.is_dare_successful,
            player_id=request.player_id,
        )
        return RoomResponse(room=room)
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/turn", response_model=RoomResponse)
async def advance_turn(
    room_id: str,
    request: PlayerActionRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """跳过当前回合"""
    try:
        return RoomResponse(room=await room_service.advance_turn(room_id, request.player_id))
    except GameError as e:
        raise to_http_exception(e)


@router.post("/{room_id}/chat", response_model=ChatResponse)
async def add_chat_message(
    room_id: str,
    request: ChatRequest,
    room_service: RoomService = Depends(get_room_service)
):
    """发送聊天消息（经过内容审核）"""
    try:
        result = await room_service.add_chat_message(room_id, request.player_id, request.nickname, request.text)
        return ChatResponse(message=result.message, flagged=result.flagged, warning=result.warning)
    except GameError as e:
        raise to_http_exception(e)
