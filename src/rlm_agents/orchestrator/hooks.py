"""
Interception points consulted by the orchestrator.

prepare_iteration runs before every root model call and may rewrite the
history, swap the model, change the output cap, finalize early or abort.
prepare_sub_agent runs before sub_rlm() spawns a nested agent and may rewrite
its prompt, context or settings, downgrade it to a plain llm_query, or abort.

Hooks may be sync or async, and may return a result model, an equivalent
dict, or None (meaning "continue unchanged").
"""

from __future__ import annotations

import inspect
import typing as t

from pydantic import BaseModel, Field

from rlm_agents.orchestrator.accounting import UsageSummary
from rlm_agents.orchestrator.models import Step

ResultT = t.TypeVar("ResultT", bound=BaseModel)


class PrepareIterationContext(BaseModel):
    """State visible to prepare_iteration."""

    model_config = {"arbitrary_types_allowed": True}

    iteration: int = Field(description="1-based index of the iteration about to run.")
    max_iterations: int
    depth: int
    model: str
    max_output_chars: int
    llm_call_count: int
    messages: list[dict[str, t.Any]]
    steps: list[Step]
    usage: UsageSummary


class PrepareIterationResult(BaseModel):
    action: t.Literal["continue", "finalize", "abort"] = "continue"
    reason: str | None = None
    final_answer: str | None = None
    model: str | None = Field(
        default=None, description="Model for this iteration only."
    )
    messages: list[dict[str, t.Any]] | None = Field(
        default=None, description="Replaces the conversation history."
    )
    max_output_chars: int | None = Field(
        default=None, gt=0, description="Output cap for this iteration only."
    )


class PrepareSubAgentContext(BaseModel):
    """State visible to prepare_sub_agent."""

    model_config = {"arbitrary_types_allowed": True}

    depth: int = Field(description="Depth of the session calling sub_rlm().")
    max_depth: int
    prompt: str
    sub_context: t.Any = None
    llm_call_count: int
    max_llm_calls: int
    usage: UsageSummary


class PrepareSubAgentResult(BaseModel):
    action: t.Literal["continue", "fallback_to_llm_query", "abort"] = "continue"
    reason: str | None = None
    prompt: str | None = None
    sub_context: t.Any = Field(
        default=None, description="Only applied when explicitly set."
    )
    sub_agent_settings: dict[str, t.Any] | None = Field(
        default=None, description="Field overrides for the child RLMAgentSettings."
    )


PrepareIterationHook = t.Callable[
    [PrepareIterationContext],
    t.Union[
        PrepareIterationResult,
        dict[str, t.Any],
        None,
        t.Awaitable[t.Union[PrepareIterationResult, dict[str, t.Any], None]],
    ],
]
PrepareSubAgentHook = t.Callable[
    [PrepareSubAgentContext],
    t.Union[
        PrepareSubAgentResult,
        dict[str, t.Any],
        None,
        t.Awaitable[t.Union[PrepareSubAgentResult, dict[str, t.Any], None]],
    ],
]


async def run_hook(
    hook: t.Callable[[t.Any], t.Any] | None,
    context: BaseModel,
    result_type: type[ResultT],
) -> ResultT | None:
    """Call a hook and normalize what it returned."""
    if hook is None:
        return None
    result = hook(context)
    if inspect.isawaitable(result):
        result = await result
    if result is None or isinstance(result, result_type):
        return result
    return result_type.model_validate(result)
