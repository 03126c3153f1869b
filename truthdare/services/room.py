"""
Room management service
房间管理服务 - 房间/回合状态机

每个操作都是"读取快照 -> 在副本上计算 -> 按版本号提交"，
版本冲突时基于最新快照重新计算，超过重试次数后报告 ConcurrentUpdateError。
外部调用（题目生成、内容审核）只在提交之前发生，不会持有任何锁。
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

from truthdare.core.config import settings
from truthdare.core.exceptions import (
    ConcurrentUpdateError, ConflictError, GameAlreadyStartedError, GameError,
    InvalidStateError, NicknameTakenError, NotHostError, NotYourTurnError,
    PlayerNotFoundError, RateLimitedError, RoomFullError, RoomNotFoundError,
    ValidationError,
)
from truthdare.models.room import (
    ANSWERABLE_STATES, ChatMessage, ChatMessageType, GameMode, GameState,
    Player, Question, QuestionHistory, QuestionOrigin, QuestionType, Room,
    RoomSession, SYSTEM_NICKNAME,
)
from truthdare.services.audit_logger import AuditEventType, audit_logger
from truthdare.services.chat_manager import ChatManager
from truthdare.services.llm import AICapability
from truthdare.services.moderation import ModerationGate
from truthdare.services.questions import QuestionSource
from truthdare.services.room_code import generate_room_code, is_valid_room_code, normalize_room_code
from truthdare.services.room_store import RoomStore
from truthdare.services.turn import select_next_player, starts_new_round

logger = logging.getLogger(__name__)

T = TypeVar("T")

# mutate(room) -> (room to commit or None to delete, outcome)
Mutation = Callable[[Room], Tuple[Optional[Room], T]]


class ChatResult(BaseModel):
    """The appended chat entry plus a non-blocking warning for the sender"""
    message: ChatMessage
    flagged: bool = False
    warning: Optional[str] = None


class RoomService:
    """房间状态机服务"""

    def __init__(
        self,
        store: RoomStore,
        capability: Optional[AICapability] = None,
        question_source: Optional[QuestionSource] = None,
        moderation_gate: Optional[ModerationGate] = None,
        chat_manager: Optional[ChatManager] = None,
        rng: Optional[random.Random] = None,
        code_generator: Callable[[], str] = generate_room_code,
        max_retries: Optional[int] = None,
    ):
        if capability is None and (question_source is None or moderation_gate is None):
            raise ValueError("RoomService needs an AI capability or both a question source and a moderation gate")

        self.store = store
        self.rng = rng or random.Random()
        self.question_source = question_source or QuestionSource(capability, rng=self.rng)
        self.moderation_gate = moderation_gate or ModerationGate(capability)
        self.chat_manager = chat_manager or ChatManager()
        self.code_generator = code_generator
        self.max_retries = max_retries or settings.ROOM_COMMIT_MAX_RETRIES

    # ------------------------------------------------------------------
    # 校验与提交
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_nickname(nickname: Optional[str]) -> str:
        cleaned = (nickname or "").strip()
        if not settings.NICKNAME_MIN_LENGTH <= len(cleaned) <= settings.NICKNAME_MAX_LENGTH:
            raise ValidationError(
                f"Nickname must be {settings.NICKNAME_MIN_LENGTH}-{settings.NICKNAME_MAX_LENGTH} characters."
            )
        return cleaned

    @staticmethod
    def _validate_room_id(room_id: Optional[str]) -> str:
        code = normalize_room_code(room_id or "")
        if not is_valid_room_code(code):
            raise ValidationError("Invalid room code.")
        return code

    @staticmethod
    def _parse_enum(enum_cls, value, label: str):
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(m.value for m in enum_cls)
            raise ValidationError(f"Invalid {label} '{value}'. Expected one of: {allowed}.")

    async def _load(self, room_id: str) -> Room:
        stored = await self.store.read(room_id)
        if stored is None:
            raise RoomNotFoundError()
        return stored.room

    async def _apply(self, room_id: str, operation: str, mutate: Mutation) -> Tuple[Optional[Room], T]:
        """
        读取-计算-提交，冲突时重试
        mutate 抛出的 GameError 直接返回给调用方，此时不会提交任何修改
        """
        for attempt in range(1, self.max_retries + 1):
            stored = await self.store.read(room_id)
            if stored is None:
                raise RoomNotFoundError()

            new_room, outcome = mutate(stored.room)
            if new_room is not None:
                new_room.touch()

            result = await self.store.commit(room_id, stored.version, new_room)
            if result.ok:
                return new_room, outcome

            logger.info(
                f"[ROOM] Commit conflict on {operation} for room {room_id} "
                f"(attempt {attempt}/{self.max_retries}), retrying on version {result.version}"
            )

        logger.warning(f"[ROOM] Giving up {operation} on room {room_id} after {self.max_retries} conflicts")
        raise ConcurrentUpdateError()

    # ------------------------------------------------------------------
    # 纯状态变换
    # ------------------------------------------------------------------

    @staticmethod
    def _require_player(room: Room, player_id: str) -> Player:
        player = room.get_player(player_id)
        if player is None:
            raise PlayerNotFoundError()
        return player

    def _require_host(self, room: Room, requester_id: Optional[str]) -> None:
        if requester_id is None:
            return
        self._require_player(room, requester_id)
        if room.host_id != requester_id:
            raise NotHostError()

    @staticmethod
    def _require_turn(room: Room, player_id: Optional[str]) -> None:
        if player_id is not None and room.current_player_id != player_id:
            raise NotYourTurnError()

    @staticmethod
    def _promote_host(room: Room) -> Player:
        new_host = room.players[0]
        for player in room.players:
            player.is_host = player.id == new_host.id
        room.host_id = new_host.id
        return new_host

    def _advance_turn(self, room: Room) -> Optional[Player]:
        """选择下一位玩家并进入 playerChoosing；没有可选玩家时结束游戏"""
        previous_id = room.current_player_id
        next_player = select_next_player(room.players, previous_id, self.rng)
        room.current_question = None

        if next_player is None:
            room.current_player_id = None
            room.game_state = GameState.GAME_OVER
            room.append_chat(ChatMessage.system("No players left to take a turn. Game over."))
            return None

        if starts_new_round(room.players, next_player, previous_id):
            room.round += 1

        room.current_player_id = next_player.id
        room.game_state = GameState.PLAYER_CHOOSING
        room.append_chat(ChatMessage.system(
            f"It's {next_player.nickname}'s turn. Choose Truth or Dare!",
            ChatMessageType.TURN_CHANGE,
        ))
        return next_player

    @staticmethod
    def _final_scores(room: Room) -> str:
        ranked = sorted(room.players, key=lambda p: p.score, reverse=True)
        return ", ".join(f"{p.nickname}: {p.score}" for p in ranked)

    # ------------------------------------------------------------------
    # 房间生命周期
    # ------------------------------------------------------------------

    async def create_room(self, host_nickname: str, mode) -> RoomSession:
        """
        创建新房间，创建者成为房主

        房间码冲突时（提交 expected_version=0 失败）重新生成，
        最多尝试 ROOM_CODE_MAX_ATTEMPTS 次
        """
        nickname = self._validate_nickname(host_nickname)
        game_mode = self._parse_enum(GameMode, mode, "mode")

        for attempt in range(1, settings.ROOM_CODE_MAX_ATTEMPTS + 1):
            room_id = self.code_generator()
            host = Player(nickname=nickname, is_host=True)
            room = Room(
                id=room_id,
                mode=game_mode,
                players=[host],
                host_id=host.id,
                player_question_history={host.id: QuestionHistory()},
            )
            room.append_chat(ChatMessage.system(
                f"{nickname} created the room ({game_mode.value} mode). Share code {room_id} to invite friends!"
            ))

            result = await self.store.commit(room_id, 0, room)
            if result.ok:
                logger.info(f"[ROOM] Room {room_id} created by {nickname} ({game_mode.value})")
                await audit_logger.log_event(
                    event_type=AuditEventType.ROOM_CREATE,
                    room_id=room_id,
                    player_id=host.id,
                    details={"mode": game_mode.value, "nickname": nickname},
                )
                return RoomSession(room_id=room_id, player=host)

            logger.warning(f"[ROOM] Room code collision on {room_id} (attempt {attempt}), generating a new code")

        raise ConflictError("Could not allocate a room code. Please try again.")

    async def join_room(self, room_id: str, nickname: str) -> RoomSession:
        """加入房间（仅限等待阶段）"""
        room_id = self._validate_room_id(room_id)
        nickname = self._validate_nickname(nickname)

        def mutate(room: Room):
            if room.find_by_nickname(nickname) is not None:
                raise NicknameTakenError()
            if room.game_state != GameState.WAITING:
                raise GameAlreadyStartedError()
            if len(room.players) >= settings.MAX_PLAYERS_PER_ROOM:
                raise RoomFullError()

            player = Player(nickname=nickname)
            room.players.append(player)
            room.player_question_history[player.id] = QuestionHistory()
            room.append_chat(ChatMessage.system(f"{nickname} joined the room!", ChatMessageType.PLAYER_JOIN))
            return room, player

        _, player = await self._apply(room_id, "join_room", mutate)

        logger.info(f"[ROOM] {nickname} joined room {room_id}")
        await audit_logger.log_event(
            event_type=AuditEventType.ROOM_JOIN,
            room_id=room_id,
            player_id=player.id,
            details={"nickname": nickname},
        )
        return RoomSession(room_id=room_id, player=player)

    async def leave_room(self, room_id: str, player_id: str) -> Optional[Room]:
        """
        离开房间

        Returns:
            Optional[Room]: 更新后的房间；最后一名玩家离开时房间被删除，返回 None
        """
        room_id = self._validate_room_id(room_id)

        def mutate(room: Room):
            leaving = self._require_player(room, player_id)
            room.players = [p for p in room.players if p.id != player_id]
            if not room.players:
                return None, leaving

            room.player_question_history.pop(player_id, None)

            notice = f"{leaving.nickname} left the room."
            if room.host_id == player_id:
                new_host = self._promote_host(room)
                notice += f" {new_host.nickname} is now the host."
            room.append_chat(ChatMessage.system(notice, ChatMessageType.PLAYER_LEAVE))

            if room.current_player_id == player_id:
                if room.is_active:
                    # 当前行动者离开：在剩余玩家中重新随机选择
                    room.current_player_id = None
                    self._advance_turn(room)
                else:
                    room.current_player_id = None
                    room.current_question = None
            return room, leaving

        updated, leaving = await self._apply(room_id, "leave_room", mutate)

        if updated is None:
            self.chat_manager.clear_room_data(room_id)
            logger.info(f"[ROOM] Last player left, room {room_id} deleted")
            await audit_logger.log_event(
                event_type=AuditEventType.ROOM_DELETE,
                room_id=room_id,
                player_id=player_id,
                details={"reason": "empty"},
            )
        else:
            logger.info(f"[ROOM] {leaving.nickname} left room {room_id}")

        await audit_logger.log_event(
            event_type=AuditEventType.ROOM_LEAVE,
            room_id=room_id,
            player_id=player_id,
            details={"nickname": leaving.nickname},
        )
        return updated

    async def start_game(self, room_id: str, requester_id: Optional[str] = None) -> Room:
        """开始游戏：随机选择第一位玩家，进入第 1 轮"""
        room_id = self._validate_room_id(room_id)

        def mutate(room: Room):
            if room.game_state != GameState.WAITING:
                raise GameAlreadyStartedError()
            self._require_host(room, requester_id)
            if len(room.players) < max(1, settings.MIN_PLAYERS_TO_START):
                raise ConflictError(f"Need at least {settings.MIN_PLAYERS_TO_START} players to start.")

            first = select_next_player(room.players, None, self.rng)
            room.round = 1
            room.current_player_id = first.id
            room.current_question = None
            room.game_state = GameState.PLAYER_CHOOSING
            room.append_chat(ChatMessage.system("The game has started! Round 1."))
            room.append_chat(ChatMessage.system(
                f"It's {first.nickname}'s turn. Choose Truth or Dare!",
                ChatMessageType.TURN_CHANGE,
            ))
            return room, first

        room, first = await self._apply(room_id, "start_game", mutate)

        logger.info(f"[ROOM] Game started in room {room_id}, first player {first.nickname}")
        await audit_logger.log_event(
            event_type=AuditEventType.GAME_START,
            room_id=room_id,
            player_id=requester_id,
            details={"players": len(room.players), "first_player": first.id},
        )
        return room

    async def end_game(self, room_id: str, requester_id: Optional[str] = None) -> Room:
        """房主结束游戏"""
        room_id = self._validate_room_id(room_id)

        def mutate(room: Room):
            if room.game_state == GameState.GAME_OVER:
                raise InvalidStateError("The game is already over.")
            self._require_host(room, requester_id)

            room.game_state = GameState.GAME_OVER
            room.current_question = None
            room.current_player_id = None
            room.append_chat(ChatMessage.system(f"Game over! Final scores: {self._final_scores(room)}"))
            return room, None

        room, _ = await self._apply(room_id, "end_game", mutate)

        logger.info(f"[ROOM] Game ended in room {room_id} after {room.round} round(s)")
        await audit_logger.log_event(
            event_type=AuditEventType.GAME_FINISH,
            room_id=room_id,
            player_id=requester_id,
            details={
                "rounds": room.round,
                "scores": {p.id: p.score for p in room.players},
            },
        )
        return room

    # ------------------------------------------------------------------
    # 回合操作
    # ------------------------------------------------------------------

    async def select_truth_or_dare(
        self,
        room_id: str,
        question_type,
        player_id: Optional[str] = None,
    ) -> Room:
        """
        当前玩家选择真心话或大冒险

        题目在提交之前获取（可能等待外部生成），提交时再次校验状态；
        若轮次已经换人，本次选择作废，房间保持不变
        """
        room_id = self._validate_room_id(room_id)
        qtype = self._parse_enum(QuestionType, question_type, "question type")

        room = await self._load(room_id)
        if room.game_state != GameState.PLAYER_CHOOSING:
            raise InvalidStateError("You can only choose Truth or Dare when it's a player's turn to choose.")
        self._require_turn(room, player_id)
        player = room.current_player
        if player is None:
            raise InvalidStateError("No player is taking a turn right now.")

        try:
            question = await self.question_source.get_question(room, player, qtype)
        except GameError:
            raise
        except Exception as e:
            logger.error(f"[QUESTION] Could not obtain a question for room {room_id}: {e}", exc_info=True)
            raise ConflictError("Could not get a question right now. Please choose again.")

        def mutate(room: Room):
            if room.game_state != GameState.PLAYER_CHOOSING or room.current_player_id != player.id:
                raise ConflictError("The turn changed before the question arrived. Please try again.")

            if question.origin != QuestionOrigin.EXHAUSTED:
                history = room.player_question_history.setdefault(player.id, QuestionHistory())
                history.record(qtype, question.text)

            room.current_question = question
            room.game_state = GameState.QUESTION_REVEALED
            room.append_chat(ChatMessage.system(
                f"{player.nickname} chose {qtype.value.upper()}: {question.text}"
            ))
            return room, None

        room, _ = await self._apply(room_id, "select_truth_or_dare", mutate)

        await audit_logger.log_event(
            event_type=AuditEventType.QUESTION_REVEAL,
            room_id=room_id,
            player_id=player.id,
            details={"type": qtype.value, "origin": question.origin.value, "question_id": question.id},
        )
        if question.origin != QuestionOrigin.GENERATED:
            await audit_logger.log_event(
                event_type=AuditEventType.QUESTION_FALLBACK,
                room_id=room_id,
                player_id=player.id,
                details={"type": qtype.value, "origin": question.origin.value},
            )
        return room

    async def begin_answer(self, room_id: str, player_id: Optional[str] = None) -> Room:
        """questionRevealed -> awaitingAnswer"""
        room_id = self._validate_room_id(room_id)

        def mutate(room: Room):
            if room.game_state != GameState.QUESTION_REVEALED:
                raise InvalidStateError("There is no revealed question to answer.")
            self._require_turn(room, player_id)
            room.game_state = GameState.AWAITING_ANSWER
            return room, None

        room, _ = await self._apply(room_id, "begin_answer", mutate)
        return room

    async def submit_answer(
        self,
        room_id: str,
        answer_text: Optional[str],
        is_dare_successful: Optional[bool] = None,
        player_id: Optional[str] = None,
    ) -> Room:
        """
        提交答案并推进回合

        真心话答案不能为空；大冒险按是否完成加前缀，完成时当前玩家得 1 分
        """
        room_id = self._validate_room_id(room_id)
        text = (answer_text or "").strip()
        if len(text) > settings.CHAT_MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Answer is too long (max {settings.CHAT_MAX_MESSAGE_LENGTH} characters).")

        def mutate(room: Room):
            question = room.current_question
            if question is None or room.game_state not in ANSWERABLE_STATES:
                raise InvalidStateError("There is no question to answer right now.")
            self._require_turn(room, player_id)
            player = room.current_player
            if player is None:
                raise InvalidStateError("No player is taking a turn right now.")

            if question.type == QuestionType.TRUTH:
                if not text:
                    raise ValidationError("Answer cannot be empty.")
                entry_text = text
                entry_type = ChatMessageType.TRUTH_ANSWER
            else:
                succeeded = bool(is_dare_successful)
                marker = "✅ Completed" if succeeded else "❌ Failed"
                entry_text = f"{marker}: {text}" if text else marker
                entry_type = ChatMessageType.DARE_RESULT
                if succeeded:
                    player.score += 1

            room.append_chat(ChatMessage(
                sender_id=player.id,
                sender_nickname=player.nickname,
                text=entry_text,
                type=entry_type,
            ))
            room.current_question = None
            self._advance_turn(room)
            return room, (player, question)

        room, (player, question) = await self._apply(room_id, "submit_answer", mutate)

        await audit_logger.log_event(
            event_type=AuditEventType.ANSWER_SUBMIT,
            room_id=room_id,
            player_id=player.id,
            details={
                "type": question.type.value,
                "dare_successful": bool(is_dare_successful) if question.type == QuestionType.DARE else None,
                "score": player.score,
            },
        )
        return room

    async def advance_turn(self, room_id: str, requester_id: Optional[str] = None) -> Room:
        """
        跳过当前回合（房主或当前玩家）
        """
        room_id = self._validate_room_id(room_id)

        def mutate(room: Room):
            if not room.is_active:
                raise InvalidStateError("The game is not in progress.")
            if requester_id is not None:
                self._require_player(room, requester_id)
                if requester_id not in (room.host_id, room.current_player_id):
                    raise NotHostError("Only the host or the current player can skip the turn.")
            self._advance_turn(room)
            return room, None

        room, _ = await self._apply(room_id, "advance_turn", mutate)
        return room

    # ------------------------------------------------------------------
    # 聊天
    # ------------------------------------------------------------------

    async def add_chat_message(
        self,
        room_id: str,
        sender_id: str,
        nickname: Optional[str],
        text: Optional[str],
    ) -> ChatResult:
        """
        发送聊天消息

        消息先经过审核再追加；被标记时只追加一条系统通知（不署名原发送者）。
        审核失败时按闸门策略处理，并把错误作为 warning 返回给发送者
        """
        room_id = self._validate_room_id(room_id)
        content, error = self.chat_manager.validate_text(text)
        if error:
            raise ValidationError(error)

        room = await self._load(room_id)
        sender = self._require_player(room, sender_id)
        if nickname and nickname.strip().lower() != sender.nickname.lower():
            raise ValidationError("Nickname does not match this player.")

        sent_at = datetime.now()
        allowed, reason = self.chat_manager.try_acquire(room_id, sender_id, sent_at)
        if not allowed:
            raise RateLimitedError(reason)

        try:
            verdict = await self.moderation_gate.moderate(content)
        except BaseException:
            self.chat_manager.release(room_id, sender_id, sent_at)
            raise

        warning = None
        if verdict.failed:
            if verdict.flagged:
                warning = "Your message could not be checked and was not posted."
            else:
                warning = "Moderation is unavailable right now; your message was posted unchecked."
            await audit_logger.log_event(
                event_type=AuditEventType.MODERATION_ERROR,
                room_id=room_id,
                player_id=sender_id,
                details={"error": verdict.error, "admitted": not verdict.flagged},
                success=False,
            )

        def mutate(room: Room):
            current = self._require_player(room, sender_id)
            if verdict.flagged:
                entry = ChatMessage(
                    sender_id=None,
                    sender_nickname=SYSTEM_NICKNAME,
                    text=f"A message from {current.nickname} was removed by moderation. Reason: {verdict.reason}",
                    type=ChatMessageType.SYSTEM,
                )
            else:
                entry = ChatMessage(
                    sender_id=current.id,
                    sender_nickname=current.nickname,
                    text=content,
                    type=ChatMessageType.MESSAGE,
                )
            room.append_chat(entry)
            return room, entry

        try:
            _, entry = await self._apply(room_id, "add_chat_message", mutate)
        except BaseException:
            # 未提交的消息不占用频率名额
            self.chat_manager.release(room_id, sender_id, sent_at)
            raise

        if verdict.flagged and not verdict.failed:
            await audit_logger.log_event(
                event_type=AuditEventType.CHAT_FLAGGED,
                room_id=room_id,
                player_id=sender_id,
                details={"reason": verdict.reason},
            )
        return ChatResult(message=entry, flagged=verdict.flagged, warning=warning)

    # ------------------------------------------------------------------
    # 查询与清理
    # ------------------------------------------------------------------

    async def get_room(self, room_id: str) -> Room:
        return await self._load(self._validate_room_id(room_id))

    async def get_player(self, room_id: str, player_id: str) -> Player:
        room = await self.get_room(room_id)
        return self._require_player(room, player_id)

    async def list_rooms(self) -> List[str]:
        return await self.store.list_room_ids()

    async def reap_idle_rooms(self, max_idle_seconds: Optional[int] = None) -> int:
        """
        删除长时间无活动的房间

        删除按读取时的版本提交，期间有新活动的房间会被保留
        """
        window = max_idle_seconds if max_idle_seconds is not None else settings.ROOM_IDLE_TIMEOUT
        cutoff = datetime.utcnow() - timedelta(seconds=window)
        removed = 0

        for room_id in await self.store.list_room_ids():
            stored = await self.store.read(room_id)
            if stored is None or stored.room.last_activity > cutoff:
                continue

            result = await self.store.commit(room_id, stored.version, None)
            if not result.ok:
                logger.info(f"[ROOM] Room {room_id} became active during cleanup, keeping it")
                continue

            removed += 1
            self.chat_manager.clear_room_data(room_id)
            await audit_logger.log_event(
                event_type=AuditEventType.ROOM_DELETE,
                room_id=room_id,
                details={"reason": "idle", "last_activity": stored.room.last_activity.isoformat()},
            )

        if removed:
            logger.info(f"[ROOM] Reaped {removed} idle room(s)")
        return removed
