"""
Question source
题目来源 - 优先 AI 生成，失败或为空时从预置题库抽取，题库耗尽时返回提示
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from truthdare.core.config import settings
from truthdare.core.exceptions import ExternalServiceError
from truthdare.data.question_pool import get_fallback_pool
from truthdare.models.room import (
    Player, Question, QuestionHistory, QuestionOrigin, QuestionType, Room
)
from truthdare.services.llm import AICapability

logger = logging.getLogger(__name__)


def exhausted_question(player: Player, question_type: QuestionType) -> Question:
    """Terminal prompt used when nothing new is left for this player and type"""
    return Question(
        id=f"exhausted-{question_type.value}-{player.id}",
        text=f"No more {question_type.value}s left for {player.nickname}! Pick the other option or end the game.",
        type=question_type,
        origin=QuestionOrigin.EXHAUSTED,
    )


class QuestionSource:
    """题目来源服务"""

    def __init__(
        self,
        capability: AICapability,
        timeout: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        self.capability = capability
        self.timeout = timeout if timeout is not None else settings.AI_GENERATION_TIMEOUT
        self.rng = rng or random.Random()

    async def get_question(self, room: Room, player: Player, question_type: QuestionType) -> Question:
        """
        Get a question for a player. Never raises for external failures.
        The caller records the returned text in the player's history in the same commit.
        """
        history = room.player_question_history.get(player.id) or QuestionHistory()
        already_seen = list(history.seen(question_type))

        generated = await self._generate(room, player, question_type, already_seen)
        if generated is not None:
            return generated

        return self._from_pool(room, player, question_type, already_seen)

    async def _generate(
        self,
        room: Room,
        player: Player,
        question_type: QuestionType,
        already_seen: list,
    ) -> Optional[Question]:
        try:
            content = await asyncio.wait_for(
                self.capability.generate_content(room.mode, question_type, player.nickname, already_seen),
                self.timeout,
            )
        except asyncio.TimeoutError:
            error = f"generation timed out after {self.timeout}s"
        except ExternalServiceError as e:
            error = e.message
        except Exception as e:
            error = str(e) or e.__class__.__name__
        else:
            text = (content.text or "").strip() if content is not None else ""
            if text:
                return Question(
                    id=f"ai-{question_type.value}-{uuid.uuid4().hex[:12]}",
                    text=text,
                    type=question_type,
                    origin=QuestionOrigin.GENERATED,
                )
            error = "generation returned empty text"

        logger.warning(
            f"[QUESTION] Generation failed for {player.nickname} in room {room.id}, "
            f"using fallback pool: {error}"
        )
        return None

    def _from_pool(
        self,
        room: Room,
        player: Player,
        question_type: QuestionType,
        already_seen: list,
    ) -> Question:
        seen = set(already_seen)
        available = [q for q in get_fallback_pool(room.mode, question_type) if q.text not in seen]
        if not available:
            logger.info(f"[QUESTION] Fallback pool exhausted for {player.nickname} ({question_type.value})")
            return exhausted_question(player, question_type)
        return self.rng.choice(available)
