"""
LLM service for question generation and chat moderation
LLM服务 - 题目生成与聊天内容审核
使用 httpx 直接请求 OpenAI 兼容接口，支持重试与兜底模型
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel

from truthdare.core.config import settings
from truthdare.core.exceptions import ExternalServiceError
from truthdare.models.room import GameMode, QuestionType

logger = logging.getLogger(__name__)


class GeneratedContent(BaseModel):
    text: str


class ModerationVerdict(BaseModel):
    flagged: bool
    reason: str = ""


class AICapability(Protocol):
    """
    External AI capability consumed by the room core.
    Both operations raise ExternalServiceError on any problem.
    """

    async def generate_content(
        self,
        mode: GameMode,
        question_type: QuestionType,
        player_nickname: str,
        already_asked: Sequence[str],
    ) -> GeneratedContent:
        ...

    async def moderate_text(self, text: str) -> ModerationVerdict:
        ...


GENERATION_SYSTEM_PROMPT = (
    "You write prompts for a party game of truth or dare. "
    "Mode '{mode}': 'minimal' is light and flirty, 'moderate' is bolder but never "
    "hateful, harassing or non-consensual. Write ONE {question_type} for the player "
    "'{nickname}'. Keep it to a single sentence.\n"
    "Never repeat or closely paraphrase any of these already-asked {question_type}s:\n"
    "{already_asked}\n"
    'Respond only with JSON: {{"questionText": "..."}}'
)

MODERATION_SYSTEM_PROMPT = (
    "You moderate chat messages in an adult party game. Flirty and suggestive language is "
    "allowed. Flag a message ONLY for: 1) hate speech or discrimination, 2) harassment or "
    "bullying of a player, 3) promotion of illegal or non-consensual acts. "
    'Respond only with JSON: {"flagged": true|false, "reason": "..."}. '
    "When flagged, the reason names the violated guideline."
)


class LLMService:
    """
    LLM service implementing the external AI capability
    使用 httpx 直接发送请求；主模型失败时自动切换兜底模型
    """

    def __init__(
        self,
        api_base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        fallback_models: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base_url = api_base_url or settings.OPENAI_BASE_URL or "https://api.openai.com/v1"
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.fallback_models = (
            fallback_models if fallback_models is not None else settings.fallback_models_list
        )
        self._transport = transport

        self.last_error: Optional[str] = None
        self.request_count = 0
        self.cost_tracking: Dict[str, Any] = {
            "daily_requests": 0,
            "last_reset": datetime.now().date(),
            "total_tokens": 0
        }

        # Retry configuration
        self.max_retries = settings.OPENAI_MAX_RETRIES
        self.retry_delay = 0.5  # seconds
        self.timeout = float(settings.OPENAI_TIMEOUT)

        # 记录模型失败次数，用于跳过持续失败的兜底模型
        self.model_failures: Dict[str, int] = {}

        logger.info("[LLM_INIT] LLM Service initialized (httpx mode, model=%s)", self.model)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _reset_daily_tracking(self) -> None:
        """Reset daily request tracking if needed"""
        current_date = datetime.now().date()
        if current_date > self.cost_tracking["last_reset"]:
            self.cost_tracking["daily_requests"] = 0
            self.cost_tracking["last_reset"] = current_date

    def _check_rate_limits(self) -> bool:
        """Check if we're within the daily request budget"""
        self._reset_daily_tracking()
        if self.cost_tracking["daily_requests"] >= settings.OPENAI_DAILY_REQUEST_LIMIT:
            logger.warning("Daily LLM request limit reached")
            return False
        return True

    async def _make_request_with_retry(
        self,
        messages: List[Dict[str, str]],
        model: str,
        **kwargs
    ) -> Optional[Dict[str, Any]]:
        """发送 chat completions 请求，带指数退避重试"""
        if not self._check_rate_limits():
            self.last_error = "daily request limit reached"
            return None

        last_exception: Optional[Exception] = None
        api_url = self.api_base_url.rstrip('/') + '/chat/completions'

        request_body = {
            "model": model,
            "messages": messages,
            "max_tokens": settings.OPENAI_MAX_TOKENS,
            "temperature": settings.OPENAI_TEMPERATURE,
            **kwargs
        }

        logger.info(f"[LLM_REQUEST] POST {api_url} model={model} messages={len(messages)}")

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout),
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                    transport=self._transport,
                    follow_redirects=True
                ) as client:
                    response = await client.post(api_url, json=request_body)

                if response.status_code == 200:
                    data = response.json()
                    usage = data.get('usage') or {}
                    if usage:
                        logger.info(
                            f"[LLM_RESPONSE] Usage: prompt={usage.get('prompt_tokens')}, "
                            f"completion={usage.get('completion_tokens')}, total={usage.get('total_tokens')}"
                        )
                        self.cost_tracking["total_tokens"] += usage.get('total_tokens', 0)

                    self.cost_tracking["daily_requests"] += 1
                    self.request_count += 1
                    logger.info(f"[LLM_RESPONSE] Request successful (attempt {attempt + 1})")
                    return data

                error_text = response.text[:500] if response.text else "No response body"
                logger.warning(f"[LLM_RESPONSE] HTTP {response.status_code}: {error_text}")
                last_exception = Exception(f"HTTP {response.status_code}: {error_text[:200]}")

            except (httpx.HTTPError, ValueError) as e:
                last_exception = e
                logger.warning(f"[LLM_REQUEST] Request failed (attempt {attempt + 1}): {e}")

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        self.last_error = str(last_exception) if last_exception else "Unknown error"
        logger.error(f"[LLM_REQUEST] Request failed after {self.max_retries} attempts: {self.last_error}")
        return None

    async def _make_request_with_fallback(
        self,
        messages: List[Dict[str, str]],
        **kwargs
    ) -> Optional[Dict[str, Any]]:
        """先尝试主模型，失败后依次尝试兜底模型"""
        result = await self._make_request_with_retry(messages, self.model, **kwargs)
        if result is not None:
            self.model_failures[self.model] = 0
            return result

        self.model_failures[self.model] = self.model_failures.get(self.model, 0) + 1
        for fallback_model in self.fallback_models:
            if self.model_failures.get(fallback_model, 0) >= 5:
                logger.debug(f"[LLM_FALLBACK] Skipping {fallback_model} (too many failures)")
                continue

            logger.info(f"[LLM_FALLBACK] Trying fallback model: {fallback_model}")
            result = await self._make_request_with_retry(messages, fallback_model, **kwargs)
            if result is not None:
                self.model_failures[fallback_model] = 0
                return result
            self.model_failures[fallback_model] = self.model_failures.get(fallback_model, 0) + 1

        return None

    @staticmethod
    def _extract_content(response: Optional[Dict[str, Any]]) -> Optional[str]:
        """从 LLM 响应中提取文本内容，去掉思考标签"""
        if not response or not response.get('choices'):
            return None

        message = response['choices'][0].get('message') or {}
        content = message.get('content') or ''
        content = re.sub(r'<think>.*?</think>', '', content, flags=re.DOTALL)
        content = re.sub(r'</?think>', '', content)
        content = content.strip()
        return content or None

    @staticmethod
    def _parse_json(content: str) -> Dict[str, Any]:
        """Parse a JSON object, tolerating a surrounding markdown code fence"""
        fenced = re.match(r'^```(?:json)?\s*(.*?)\s*```$', content, flags=re.DOTALL)
        if fenced:
            content = fenced.group(1)
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        return data

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        if not self.is_configured:
            raise ExternalServiceError("AI capability is not configured")

        response = await self._make_request_with_fallback(messages)
        content = self._extract_content(response)
        if content is None:
            raise ExternalServiceError(self.last_error or "empty response from model")
        return content

    async def generate_content(
        self,
        mode: GameMode,
        question_type: QuestionType,
        player_nickname: str,
        already_asked: Sequence[str],
    ) -> GeneratedContent:
        """生成一道真心话或大冒险题目"""
        asked = "\n".join(f'- "{text}"' for text in already_asked) or "(none yet)"
        system_prompt = GENERATION_SYSTEM_PROMPT.format(
            mode=mode.value,
            question_type=question_type.value,
            nickname=player_nickname,
            already_asked=asked,
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": f"Generate the {question_type.value} now."},
        ]

        content = await self._complete(messages)
        try:
            text = self._parse_json(content).get("questionText")
        except ValueError:
            # 部分模型不遵守 JSON 格式，直接使用纯文本
            text = content

        if not isinstance(text, str) or not text.strip():
            raise ExternalServiceError("AI failed to generate a valid question text")

        logger.info(f"[LLM] Generated {question_type.value} for {player_nickname}: {text[:100]}")
        return GeneratedContent(text=text.strip())

    async def moderate_text(self, text: str) -> ModerationVerdict:
        """审核一条聊天消息"""
        messages = [
            {"role": "system", "content": MODERATION_SYSTEM_PROMPT},
            {"role": "user", "content": f"Message to analyze: {text}"},
        ]

        content = await self._complete(messages)
        try:
            data = self._parse_json(content)
        except ValueError as e:
            raise ExternalServiceError(f"malformed moderation output: {e}") from e

        flagged = data.get("flagged")
        if not isinstance(flagged, bool):
            raise ExternalServiceError("moderation output is missing 'flagged'")
        return ModerationVerdict(flagged=flagged, reason=str(data.get("reason") or ""))

    async def health_check(self) -> Dict[str, Any]:
        """Check LLM service health status"""
        return {
            "configured": self.is_configured,
            "model": self.model,
            "last_error": self.last_error,
            "request_count": self.request_count,
            "daily_requests": self.cost_tracking["daily_requests"],
            "total_tokens": self.cost_tracking["total_tokens"],
        }
