"""
Pytest configuration and fixtures
测试配置和固件
"""

import asyncio
import random
from typing import List, Optional, Sequence

import pytest

from truthdare.core.exceptions import ExternalServiceError
from truthdare.models.room import ANSWERABLE_STATES, GameMode, QuestionType
from truthdare.services.chat_manager import ChatManager
from truthdare.services.llm import GeneratedContent, ModerationVerdict
from truthdare.services.moderation import ModerationGate
from truthdare.services.questions import QuestionSource
from truthdare.services.room import RoomService
from truthdare.services.room_store import InMemoryRoomStore


class FakeAI:
    """
    Scriptable AI capability
    text=None makes generation fail; verdict=None admits every message
    """

    def __init__(
        self,
        text: Optional[str] = None,
        verdict: Optional[ModerationVerdict] = None,
        generate_error: Optional[Exception] = None,
        moderate_error: Optional[Exception] = None,
        delay: float = 0,
    ):
        self.text = text
        self.verdict = verdict
        self.generate_error = generate_error
        self.moderate_error = moderate_error
        self.delay = delay
        self.generate_calls: List[dict] = []
        self.moderate_calls: List[str] = []

    async def generate_content(
        self,
        mode: GameMode,
        question_type: QuestionType,
        player_nickname: str,
        already_asked: Sequence[str],
    ) -> GeneratedContent:
        self.generate_calls.append({
            "mode": mode,
            "type": question_type,
            "nickname": player_nickname,
            "already_asked": list(already_asked),
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.generate_error is not None:
            raise self.generate_error
        if self.text is None:
            raise ExternalServiceError("generation disabled")
        return GeneratedContent(text=self.text)

    async def moderate_text(self, text: str) -> ModerationVerdict:
        self.moderate_calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.moderate_error is not None:
            raise self.moderate_error
        return self.verdict or ModerationVerdict(flagged=False)


def make_service(ai: FakeAI, store: Optional[InMemoryRoomStore] = None, seed: int = 7, **kwargs) -> RoomService:
    rng = random.Random(seed)
    return RoomService(
        store or InMemoryRoomStore(),
        question_source=QuestionSource(ai, timeout=1.0, rng=rng),
        moderation_gate=ModerationGate(ai, timeout=1.0, fail_open=kwargs.pop("fail_open", True)),
        chat_manager=ChatManager(message_cooldown=0, max_messages_per_minute=10000),
        rng=rng,
        **kwargs,
    )


@pytest.fixture
def fake_ai():
    """Generation fails (pool fallback), moderation admits everything"""
    return FakeAI()


@pytest.fixture
def store():
    return InMemoryRoomStore()


@pytest.fixture
def room_service(fake_ai, store):
    return make_service(fake_ai, store)


def check_invariants(room):
    """Room invariants that must hold after every committed mutation"""
    assert room.players, "an empty room must be deleted"
    hosts = [p for p in room.players if p.is_host]
    assert len(hosts) == 1
    assert room.host_id == hosts[0].id

    ids = [p.id for p in room.players]
    assert room.current_player_id is None or room.current_player_id in ids
    if room.current_question is not None:
        assert room.game_state in ANSWERABLE_STATES

    nicknames = [p.nickname.lower() for p in room.players]
    assert len(nicknames) == len(set(nicknames))

    assert set(room.player_question_history) == set(ids)
    for history in room.player_question_history.values():
        assert len(history.truths) == len(set(history.truths))
        assert len(history.dares) == len(set(history.dares))

    assert all(p.score >= 0 for p in room.players)
