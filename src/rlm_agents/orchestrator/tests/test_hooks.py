"""Tests for hook result normalization."""

import pytest
from pydantic import ValidationError

from rlm_agents.orchestrator.accounting import UsageSummary
from rlm_agents.orchestrator.hooks import (
    PrepareIterationContext,
    PrepareIterationResult,
    PrepareSubAgentResult,
    run_hook,
)


@pytest.fixture
def iteration_context() -> PrepareIterationContext:
    return PrepareIterationContext(
        iteration=1,
        max_iterations=5,
        depth=0,
        model="root-model",
        max_output_chars=1000,
        llm_call_count=0,
        messages=[],
        steps=[],
        usage=UsageSummary(),
    )


class TestRunHook:
    """Tests for run_hook."""

    @pytest.mark.asyncio
    async def test_no_hook(self, iteration_context):
        assert await run_hook(None, iteration_context, PrepareIterationResult) is None

    @pytest.mark.asyncio
    async def test_sync_hook_returning_none(self, iteration_context):
        assert await run_hook(lambda ctx: None, iteration_context, PrepareIterationResult) is None

    @pytest.mark.asyncio
    async def test_dict_result_validated(self, iteration_context):
        result = await run_hook(
            lambda ctx: {"action": "finalize", "final_answer": "done"},
            iteration_context,
            PrepareIterationResult,
        )
        assert isinstance(result, PrepareIterationResult)
        assert result.action == "finalize"
        assert result.final_answer == "done"

    @pytest.mark.asyncio
    async def test_async_hook_sees_context(self, iteration_context):
        seen = []

        async def hook(ctx: PrepareIterationContext) -> PrepareIterationResult:
            seen.append(ctx.iteration)
            return PrepareIterationResult(model="other-model")

        result = await run_hook(hook, iteration_context, PrepareIterationResult)
        assert seen == [1]
        assert result.model == "other-model"

    @pytest.mark.asyncio
    async def test_invalid_action_rejected(self, iteration_context):
        with pytest.raises(ValidationError):
            await run_hook(lambda ctx: {"action": "explode"}, iteration_context, PrepareIterationResult)


class TestPrepareSubAgentResult:
    """Tests for the explicit-set semantics of sub_context."""

    def test_sub_context_unset(self):
        assert "sub_context" not in PrepareSubAgentResult().model_fields_set

    def test_sub_context_explicit_none(self):
        result = PrepareSubAgentResult(sub_context=None)
        assert "sub_context" in result.model_fields_set

    def test_output_cap_must_be_positive(self):
        with pytest.raises(ValidationError):
            PrepareIterationResult(max_output_chars=0)
