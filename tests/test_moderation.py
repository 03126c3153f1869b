"""
Content moderation gate tests
内容审核闸门测试
"""

import asyncio

import pytest

from conftest import FakeAI
from truthdare.core.exceptions import ExternalServiceError
from truthdare.services.llm import ModerationVerdict
from truthdare.services.moderation import FAIL_CLOSED_REASON, ModerationGate


async def test_clean_text_is_admitted():
    gate = ModerationGate(FakeAI(), timeout=1.0, fail_open=True)
    result = await gate.moderate("hello there")
    assert not result.flagged
    assert not result.failed


async def test_flagged_verdict_is_passed_through():
    gate = ModerationGate(FakeAI(verdict=ModerationVerdict(flagged=True, reason="R")), timeout=1.0)
    result = await gate.moderate("something nasty")
    assert result.flagged
    assert result.reason == "R"
    assert not result.failed


@pytest.mark.parametrize("error", [ExternalServiceError("quota"), RuntimeError("boom"), ValueError()])
async def test_failure_fails_open_by_default(error):
    gate = ModerationGate(FakeAI(moderate_error=error), timeout=1.0, fail_open=True)
    result = await gate.moderate("hi")
    assert not result.flagged
    assert result.failed
    assert result.error


async def test_timeout_counts_as_failure():
    gate = ModerationGate(FakeAI(delay=0.5), timeout=0.01, fail_open=True)
    result = await gate.moderate("hi")
    assert result.failed
    assert "timed out" in result.error
    assert not result.flagged


async def test_fail_closed_policy_flags_on_failure():
    gate = ModerationGate(FakeAI(moderate_error=ExternalServiceError("down")), timeout=1.0, fail_open=False)
    result = await gate.moderate("hi")
    assert result.flagged
    assert result.reason == FAIL_CLOSED_REASON
    assert result.failed


async def test_each_call_reaches_capability_after_timeouts():
    ai = FakeAI(delay=1.0)
    gate = ModerationGate(ai, timeout=0.01)
    await gate.moderate("one")
    await gate.moderate("two")
    await asyncio.sleep(0)
    assert ai.moderate_calls == ["one", "two"]
