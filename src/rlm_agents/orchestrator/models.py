"""Data models shared by the orchestrator, its sandbox session and callers."""

from __future__ import annotations

import inspect
import typing as t

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from rlm_agents.orchestrator.accounting import UsageSummary

# Context handed to the REPL as the `context` variable
RLMContext = t.Union[str, list[str], dict[str, t.Any]]


class Step(BaseModel):
    """One executed code block and what it printed."""

    model_config = ConfigDict(frozen=True)

    iteration: int = Field(description="1-based iteration that produced the step.")
    reasoning: str = Field(description="Model text written before the code block.")
    code: str = Field(description="The code that was executed.")
    output: str = Field(description="Composed output, truncated to the output cap.")


class RLMResult(BaseModel):
    """Output of one RLMAgent invocation."""

    model_config = {"arbitrary_types_allowed": True}

    text: str = Field(description="The final answer.")
    steps: list[Step] = Field(default_factory=list)
    llm_call_count: int = Field(
        default=0,
        description="Root model calls plus every sub-model and nested-agent call.",
    )
    iterations: int = Field(default=0, description="Iterations consumed.")
    usage: UsageSummary = Field(default_factory=UsageSummary)


class RLMStreamResult(RLMResult):
    """RLMResult whose answer can be consumed as a stream.

    The answer is emitted as a single chunk once the loop has finished.
    """

    async def text_stream(self) -> t.AsyncIterator[str]:
        yield self.text


# Callback events
class IterationStartEvent(BaseModel):
    iteration: int
    messages: list[dict[str, t.Any]]


class IterationCompleteEvent(BaseModel):
    iteration: int
    step: Step
    llm_response: str
    execution_time_ms: float


class LLMCallEvent(BaseModel):
    model: str
    depth: int = 0
    is_sub_call: bool = False
    messages: list[dict[str, t.Any]] | None = None
    prompt: str | None = None


class ErrorEvent(BaseModel):
    model_config = {"arbitrary_types_allowed": True}

    iteration: int
    phase: t.Literal["llm", "execution", "parse"]
    error: Exception
    context: str


EventT = t.TypeVar("EventT", bound=BaseModel)
Callback = t.Callable[[EventT], t.Union[None, t.Awaitable[None]]]


class RLMCallbacks(BaseModel):
    """Optional observers of the loop; sync or async callables."""

    model_config = {"arbitrary_types_allowed": True}

    on_iteration_start: Callback[IterationStartEvent] | None = None
    on_iteration_complete: Callback[IterationCompleteEvent] | None = None
    on_llm_call: Callback[LLMCallEvent] | None = None
    on_error: Callback[ErrorEvent] | None = None


async def fire(callback: Callback[EventT] | None, event: EventT) -> None:
    """Deliver an event to an observer; observer failures never reach the loop."""
    if callback is None:
        return
    try:
        result = callback(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Callback failed | event={}", type(event).__name__)
