"""
Content moderation gate
内容审核闸门 - 用户提交的聊天文本进入共享记录前必须经过审核
"""

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel

from truthdare.core.config import settings
from truthdare.core.exceptions import ExternalServiceError
from truthdare.services.llm import AICapability

logger = logging.getLogger(__name__)

FAIL_CLOSED_REASON = "Moderation is temporarily unavailable."


class ModerationResult(BaseModel):
    """
    flagged/reason come from the capability; error is set when the call failed
    and the configured failure policy decided the outcome instead.
    """
    flagged: bool
    reason: str = ""
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ModerationGate:
    """
    审核闸门
    外部调用超时或出错时按策略处理：默认放行原文（fail-open）并把错误告知调用方，
    fail_open=False 时一律按被标记处理（fail-closed）
    """

    def __init__(
        self,
        capability: AICapability,
        timeout: Optional[float] = None,
        fail_open: Optional[bool] = None,
    ):
        self.capability = capability
        self.timeout = timeout if timeout is not None else settings.AI_MODERATION_TIMEOUT
        self.fail_open = fail_open if fail_open is not None else settings.MODERATION_FAIL_OPEN

    async def moderate(self, text: str) -> ModerationResult:
        try:
            verdict = await asyncio.wait_for(self.capability.moderate_text(text), self.timeout)
        except asyncio.TimeoutError:
            return self._on_failure(f"moderation timed out after {self.timeout}s")
        except ExternalServiceError as e:
            return self._on_failure(e.message)
        except Exception as e:
            # 外部能力不可信，任何异常都视为审核失败
            return self._on_failure(str(e) or e.__class__.__name__)

        if verdict.flagged:
            logger.info(f"[MODERATION] Message flagged: {verdict.reason}")
        return ModerationResult(flagged=verdict.flagged, reason=verdict.reason)

    def _on_failure(self, error: str) -> ModerationResult:
        if self.fail_open:
            logger.warning(f"[MODERATION] Moderation failed, admitting message: {error}")
            return ModerationResult(flagged=False, reason="", error=error)

        logger.warning(f"[MODERATION] Moderation failed, rejecting message: {error}")
        return ModerationResult(flagged=True, reason=FAIL_CLOSED_REASON, error=error)
