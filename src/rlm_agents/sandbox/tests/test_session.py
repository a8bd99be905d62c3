"""Tests for SandboxSession.

Test Classes and Methods
========================

TestLoading
    - test_context_bound
    - test_second_load_raises
    - test_context_is_copied
    - test_unsupported_context_rejected
    - test_execute_before_load_raises

TestBridgeFunctions
    - test_print_and_error_captured
    - test_output_buffer_reset_per_execute
    - test_final_constructors_do_not_stop_execution
    - test_llm_query_returns_text
    - test_llm_query_batched_preserves_order
    - test_llm_query_batched_rejects_string
    - test_llm_query_failure_reaches_guest

TestBudget
    - test_third_call_rejected
    - test_batch_counts_each_prompt
    - test_failed_batch_cancels_siblings

TestSubRLM
    - test_depth_floor_behaves_like_llm_query
    - test_child_settings_halved
    - test_fallback_to_llm_query
    - test_abort_is_fatal_even_if_caught
    - test_child_failure_wrapped
    - test_exhausted_budget_blocks_spawn

TestCleanup
    - test_cleanup_idempotent
    - test_execute_after_cleanup_raises
    - test_engine_disposed_on_cleanup
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rlm_agents.errors import (
    ContextAlreadyLoadedError,
    ExecutionError,
    HookAbortError,
)
from rlm_agents.orchestrator.accounting import UsageSummary
from rlm_agents.orchestrator.models import RLMResult
from rlm_agents.orchestrator.tests.common_fixtures import scripted_client, text_response
from rlm_agents.sandbox.engine import MISSING
from rlm_agents.sandbox.session import SandboxSession


@pytest.fixture
def session(mock_llm_client, session_settings) -> SandboxSession:
    session = SandboxSession(llm_client=mock_llm_client, settings=session_settings)
    session.load("The quick brown fox")
    yield session
    session.cleanup()


def nested_settings(session_settings, **overrides):
    return session_settings.model_copy(update={"max_depth": 2, **overrides})


class TestLoading:
    """Tests for load()."""

    @pytest.mark.asyncio
    async def test_context_bound(self, session):
        result = await session.execute("len(context)")
        assert result.result == 19

    def test_second_load_raises(self, session):
        with pytest.raises(ContextAlreadyLoadedError):
            session.load("again")

    @pytest.mark.asyncio
    async def test_context_is_copied(self, mock_llm_client, session_settings):
        original = {"items": [1, 2]}
        session = SandboxSession(llm_client=mock_llm_client, settings=session_settings)
        session.load(original)
        await session.execute("context['items'].append(3)")
        session.cleanup()
        assert original == {"items": [1, 2]}

    def test_unsupported_context_rejected(self, mock_llm_client, session_settings):
        session = SandboxSession(llm_client=mock_llm_client, settings=session_settings)
        with pytest.raises(TypeError):
            session.load(42)

    @pytest.mark.asyncio
    async def test_execute_before_load_raises(self, mock_llm_client, session_settings):
        session = SandboxSession(llm_client=mock_llm_client, settings=session_settings)
        with pytest.raises(ExecutionError, match="not been loaded"):
            await session.execute("1")


class TestBridgeFunctions:
    """Tests for the functions exposed to guest code."""

    @pytest.mark.asyncio
    async def test_print_and_error_captured(self, session):
        result = await session.execute("print('a', 1)\nerror('bad', sep='-')\nlog('x', end='')")
        assert result.stdout == "a 1\nERROR: bad\nx"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_output_buffer_reset_per_execute(self, session):
        await session.execute("print('first')")
        result = await session.execute("print('second')")
        assert result.stdout == "second"

    @pytest.mark.asyncio
    async def test_final_constructors_do_not_stop_execution(self, session):
        result = await session.execute("marker = FINAL('x')\nref = FINAL_VAR('y')\nprint('after')")
        assert result.stdout == "after"
        assert session.read_binding("marker") == {"type": "final", "value": "x"}
        assert session.read_binding("ref") == {"type": "final_var", "name": "y"}

    @pytest.mark.asyncio
    async def test_llm_query_returns_text(self, session, mock_llm_client):
        result = await session.execute("reply = llm_query('hi')\nreply")
        assert result.result == "answer to: hi"
        assert session.budget.call_count == 1
        assert mock_llm_client.agenerate.call_args.kwargs["model"] == "small-model"
        assert session.usage.total_tokens == 5

    @pytest.mark.asyncio
    async def test_llm_query_batched_preserves_order(self, session):
        result = await session.execute("llm_query_batched(['a', 'b'])")
        assert result.result == ["answer to: a", "answer to: b"]

    @pytest.mark.asyncio
    async def test_llm_query_batched_rejects_string(self, session):
        result = await session.execute("llm_query_batched('abc')")
        assert result.error == "TypeError: llm_query_batched expects a list of prompts"
        assert session.budget.call_count == 0

    @pytest.mark.asyncio
    async def test_llm_query_failure_reaches_guest(self, session_settings):
        client = scripted_client(RuntimeError("model down"))
        session = SandboxSession(llm_client=client, settings=session_settings)
        session.load("ctx")
        try:
            result = await session.execute(
                "try:\n    llm_query('x')\nexcept Exception as e:\n    caught = str(e)"
            )
            assert result.error is None
            assert session.read_binding("caught") == "llm_query failed: model down"
        finally:
            session.cleanup()


class TestBudget:
    """Tests for the sub-model call ceiling."""

    @pytest.mark.asyncio
    async def test_third_call_rejected(self, session, mock_llm_client):
        result = await session.execute("llm_query('1')\nllm_query('2')\nllm_query('3')")
        assert result.error == (
            "BudgetExceededError: Maximum LLM calls (2) exceeded. Used 2/2 calls."
        )
        assert session.budget.call_count == 2
        assert mock_llm_client.agenerate.await_count == 2

    @pytest.mark.asyncio
    async def test_batch_counts_each_prompt(self, session):
        result = await session.execute("llm_query_batched(['a', 'b', 'c'])")
        assert result.error.startswith("BudgetExceededError")
        assert session.budget.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_batch_cancels_siblings(self, session_settings):
        cancelled = []

        async def slow_generate(messages, **kwargs):
            try:
                await asyncio.sleep(0.3)
            except asyncio.CancelledError:
                cancelled.append(messages[-1]["content"])
                raise
            return text_response("done", total_tokens=10)

        client = MagicMock()
        client.agenerate = AsyncMock(side_effect=slow_generate)
        session = SandboxSession(llm_client=client, settings=session_settings)
        session.load("ctx")
        try:
            result = await session.execute("llm_query_batched(['a', 'b', 'c'])")
            assert result.error.startswith("BudgetExceededError")
            assert sorted(cancelled) == ["a", "b"]
            assert session.usage.total_tokens == 0
        finally:
            session.cleanup()

        await asyncio.sleep(0.5)
        assert session.usage.total_tokens == 0


class TestSubRLM:
    """Tests for sub_rlm()."""

    @pytest.mark.asyncio
    async def test_depth_floor_behaves_like_llm_query(self, session, mock_llm_client):
        result = await session.execute("sub_rlm('inner', sub_context='ignored')")
        assert result.result == "answer to: inner"
        assert session.budget.call_count == 1
        assert mock_llm_client.agenerate.call_args.args[0] == [
            {"role": "user", "content": "inner"}
        ]

    @pytest.mark.asyncio
    async def test_child_settings_halved(self, mock_llm_client, session_settings):
        settings = nested_settings(session_settings, max_iterations=30, max_llm_calls=40)
        session = SandboxSession(llm_client=mock_llm_client, settings=settings)
        session.load("ctx")
        child_result = RLMResult(
            text="child answer",
            llm_call_count=3,
            usage=UsageSummary(total_tokens=9),
        )

        with patch("rlm_agents.orchestrator.rlm_agent.RLMAgent") as agent_cls:
            agent_cls.return_value.run = AsyncMock(return_value=child_result)
            try:
                result = await session.execute("sub_rlm('task', sub_context=['a', 'b'])")
            finally:
                session.cleanup()

        assert result.result == "child answer"
        child_settings = agent_cls.call_args.kwargs["settings"]
        assert child_settings.max_iterations == 15
        assert child_settings.max_llm_calls == 20
        run_kwargs = agent_cls.return_value.run.call_args.kwargs
        assert run_kwargs["depth"] == 1
        assert run_kwargs["context"] == ["a", "b"]
        assert run_kwargs["query"] == "task"
        assert session.budget.call_count == 3
        assert session.usage.total_tokens == 9

    @pytest.mark.asyncio
    async def test_fallback_to_llm_query(self, mock_llm_client, session_settings):
        settings = nested_settings(
            session_settings,
            prepare_sub_agent=lambda ctx: {
                "action": "fallback_to_llm_query",
                "prompt": ctx.prompt.upper(),
            },
        )
        session = SandboxSession(llm_client=mock_llm_client, settings=settings)
        session.load("ctx")
        try:
            result = await session.execute("sub_rlm('task')")
        finally:
            session.cleanup()

        assert result.result == "answer to: TASK"
        assert session.budget.call_count == 1

    @pytest.mark.asyncio
    async def test_abort_is_fatal_even_if_caught(self, mock_llm_client, session_settings):
        settings = nested_settings(
            session_settings,
            prepare_sub_agent=lambda ctx: {"action": "abort", "reason": "too deep"},
        )
        session = SandboxSession(llm_client=mock_llm_client, settings=settings)
        session.load("ctx")
        try:
            with pytest.raises(HookAbortError, match="too deep"):
                await session.execute("try:\n    sub_rlm('task')\nexcept Exception:\n    pass")
        finally:
            session.cleanup()

    @pytest.mark.asyncio
    async def test_child_failure_wrapped(self, mock_llm_client, session_settings):
        session = SandboxSession(
            llm_client=mock_llm_client, settings=nested_settings(session_settings)
        )
        session.load("ctx")

        with patch("rlm_agents.orchestrator.rlm_agent.RLMAgent") as agent_cls:
            agent_cls.return_value.run = AsyncMock(side_effect=ValueError("child broke"))
            try:
                result = await session.execute("sub_rlm('task')")
            finally:
                session.cleanup()

        assert result.error == "RecursiveCallError: sub_rlm failed: child broke"

    @pytest.mark.asyncio
    async def test_exhausted_budget_blocks_spawn(self, mock_llm_client, session_settings):
        session = SandboxSession(
            llm_client=mock_llm_client, settings=nested_settings(session_settings)
        )
        session.load("ctx")
        session.budget.absorb(2)
        try:
            result = await session.execute("sub_rlm('task')")
        finally:
            session.cleanup()

        assert result.error.startswith("BudgetExceededError")


class TestCleanup:
    """Tests for cleanup()."""

    def test_cleanup_idempotent(self, mock_llm_client, session_settings):
        session = SandboxSession(llm_client=mock_llm_client, settings=session_settings)
        session.load("ctx")
        session.cleanup()
        session.cleanup()
        assert session.closed
        assert session.read_binding("context") is MISSING

    @pytest.mark.asyncio
    async def test_execute_after_cleanup_raises(self, mock_llm_client, session_settings):
        session = SandboxSession(llm_client=mock_llm_client, settings=session_settings)
        session.load("ctx")
        session.cleanup()
        with pytest.raises(ExecutionError, match="closed"):
            await session.execute("1")

    def test_engine_disposed_on_cleanup(self, mock_llm_client, session_settings):
        engine = MagicMock()
        session = SandboxSession(
            llm_client=mock_llm_client, settings=session_settings, engine=engine
        )
        session.cleanup()
        engine.dispose.assert_called_once()
