"""
RLMAgent - Recursive Language Model agent over a Python REPL.

The context is never sent to the model. It is loaded into a sandboxed REPL as
the `context` variable, and the model explores it by writing code:

1. The model answers with reasoning and a ```python block
2. The first block runs in the sandbox session
3. Only a bounded preview of the output goes back into the history
4. Repeat until the model writes FINAL(answer) or FINAL_VAR(variable)

Guest code can call llm_query() for semantic judgments and sub_rlm() to hand
a sub-task to a nested RLMAgent one level deeper.
"""

from __future__ import annotations

import asyncio
import json
import time
import typing as t

from loguru import logger
from openai.types.chat import ChatCompletionMessageParam
from pydantic import BaseModel, ConfigDict, Field

from rlm_agents.configs import get_orchestrator_template_module
from rlm_agents.errors import (
    ExecutionError,
    HookAbortError,
    ServiceError,
    UnresolvedVariableError,
)
from rlm_agents.llm_core.llm_client import TextGenerationService, TextResponse
from rlm_agents.orchestrator.accounting import UsageSummary
from rlm_agents.orchestrator.hooks import (
    PrepareIterationContext,
    PrepareIterationHook,
    PrepareIterationResult,
    PrepareSubAgentHook,
    run_hook,
)
from rlm_agents.orchestrator.models import (
    ErrorEvent,
    IterationCompleteEvent,
    IterationStartEvent,
    LLMCallEvent,
    RLMCallbacks,
    RLMContext,
    RLMResult,
    RLMStreamResult,
    Step,
    fire,
)
from rlm_agents.orchestrator.response_parser import (
    FinalMarker,
    extract_code_blocks,
    extract_final,
    extract_reasoning,
)
from rlm_agents.sandbox.engine import MISSING
from rlm_agents.sandbox.session import ExecutionResult, SandboxSession
from rlm_agents.settings import get_settings

# Load templates
_templates = get_orchestrator_template_module("rlm_agent.jinja")

TRUNCATION_MARKER = "\n...[truncated]"
DEFAULT_CONTEXT = "No context provided. Answer based on the query."
DEFAULT_QUERY = "Please provide a query."

_CONTEXT_PREVIEW_CHARS = 200
_CONTEXT_PREVIEW_ITEMS = 3
_CONTEXT_PREVIEW_KEYS = 5


def _client_default(client: TextGenerationService, name: str) -> str:
    default = getattr(client, name, None)
    return default if isinstance(default, str) else ""


class RLMAgentSettings(BaseModel):
    """Per-agent configuration. Unset limits come from get_settings()."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str | None = Field(
        default_factory=lambda: get_settings().rlm_model or None,
        description="Root model driving the loop (client default if None).",
    )
    sub_model: str | None = Field(
        default_factory=lambda: get_settings().rlm_sub_model or None,
        description=(
            "Model answering llm_query(). Falls back to model, then to the "
            "client's default sub-model."
        ),
    )
    max_iterations: int = Field(
        default_factory=lambda: get_settings().rlm_max_iterations, ge=1
    )
    max_llm_calls: int = Field(
        default_factory=lambda: get_settings().rlm_max_llm_calls, ge=0
    )
    max_output_chars: int = Field(
        default_factory=lambda: get_settings().rlm_max_output_chars, ge=1
    )
    max_history_preview: int = Field(
        default_factory=lambda: get_settings().rlm_max_history_preview, ge=0
    )
    max_depth: int = Field(default_factory=lambda: get_settings().rlm_max_depth, ge=1)
    execution_timeout: float = Field(
        default_factory=lambda: get_settings().rlm_execution_timeout,
        gt=0,
        description="Wall-clock budget in seconds for one code block.",
    )
    verbose: bool = Field(default_factory=lambda: get_settings().rlm_verbose)
    prepare_iteration: PrepareIterationHook | None = None
    prepare_sub_agent: PrepareSubAgentHook | None = None

    def resolved_model(self, client: TextGenerationService) -> str:
        return self.model or _client_default(client, "default_model")

    def resolved_sub_model(self, client: TextGenerationService) -> str:
        return (
            self.sub_model
            or self.model
            or _client_default(client, "default_sub_model")
            or _client_default(client, "default_model")
        )


def describe_context(context: RLMContext) -> dict[str, t.Any]:
    """Shape, size and a short preview of a context for the task prompt."""
    if isinstance(context, str):
        return {
            "kind": "str",
            "length": len(context),
            "preview": context[:_CONTEXT_PREVIEW_CHARS],
            "more": len(context) > _CONTEXT_PREVIEW_CHARS,
        }
    if isinstance(context, dict):
        keys = [str(key) for key in context]
        return {
            "kind": "dict",
            "length": len(keys),
            "items": keys[:_CONTEXT_PREVIEW_KEYS],
            "more": len(keys) > _CONTEXT_PREVIEW_KEYS,
        }
    items = list(context)
    return {
        "kind": "list",
        "length": len(items),
        "items": [str(item) for item in items[:_CONTEXT_PREVIEW_ITEMS]],
        "more": len(items) > _CONTEXT_PREVIEW_ITEMS,
    }


def render_value(value: t.Any) -> str:
    """Render a REPL value as a final answer."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_return_value(value: t.Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=repr)
    except (TypeError, ValueError):
        return repr(value)


def truncate_output(output: str, max_chars: int) -> str:
    if len(output) <= max_chars:
        return output
    return output[:max_chars] + TRUNCATION_MARKER


def compose_output(execution: ExecutionResult, max_chars: int) -> str:
    """Printed text, then the return value, then the error; truncated."""
    parts = []
    if execution.stdout:
        parts.append(execution.stdout)
    if execution.has_result:
        parts.append(f"[Return value]: {render_return_value(execution.result)}")
    if execution.error:
        parts.append(f"[Error]: {execution.error}")
    return truncate_output("\n".join(parts), max_chars)


def output_metadata(output: str, error: str | None, preview_chars: int) -> str:
    """The user turn that stands in for an execution's output in the history."""
    return str(
        _templates.output_metadata(
            length=len(output),
            preview=output[:preview_chars],
            more=len(output) > preview_chars,
            error=error,
        )
    )


def _message_text(message: t.Mapping[str, t.Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def context_from_messages(
    messages: t.Sequence[t.Mapping[str, t.Any]],
) -> tuple[str, str]:
    """System messages become the context, the last user message the query."""
    system_text = "\n\n".join(
        text
        for text in (_message_text(m) for m in messages if m.get("role") == "system")
        if text
    )
    user_messages = [m for m in messages if m.get("role") == "user"]
    query = _message_text(user_messages[-1]) if user_messages else ""
    return system_text or DEFAULT_CONTEXT, query or DEFAULT_QUERY


class RLMAgent:
    """
    Recursive Language Model agent.

    Usage:
        agent = RLMAgent(
            llm_client=create_openai_client(),
            settings=RLMAgentSettings(model="gpt-4o", sub_model="gpt-4o-mini"),
        )
        result = await agent.generate(
            context=huge_log_file,
            query="Which service failed first?",
        )
        print(result.text, result.iterations, result.llm_call_count)

        # Nested agents
        agent = RLMAgent(llm_client=client, max_depth=2)
    """

    def __init__(
        self,
        llm_client: TextGenerationService,
        settings: RLMAgentSettings | None = None,
        sub_llm_client: TextGenerationService | None = None,
        **overrides: t.Any,
    ) -> None:
        """
        Initialize RLMAgent.

        Args:
            llm_client: Service answering the root model calls
            settings: Agent settings (defaults from environment if None)
            sub_llm_client: Service answering llm_query() (llm_client if None)
            **overrides: Field overrides applied on top of settings
        """
        self.llm_client = llm_client
        self.sub_llm_client = sub_llm_client or llm_client
        base = settings or RLMAgentSettings()
        self.settings = (
            RLMAgentSettings.model_validate({**dict(base), **overrides})
            if overrides
            else base
        )

    @property
    def model(self) -> str:
        return self.settings.resolved_model(self.llm_client)

    def run_sync(
        self,
        context: RLMContext | None = None,
        query: str | None = None,
        **kwargs: t.Any,
    ) -> RLMResult:
        """Sync execution - wraps async implementation."""
        return asyncio.run(self.generate(context, query, **kwargs))

    async def generate(
        self,
        context: RLMContext | None = None,
        query: str | None = None,
        *,
        messages: t.Sequence[t.Mapping[str, t.Any]] | None = None,
        abort_signal: asyncio.Event | None = None,
        timeout: float | None = None,
        callbacks: RLMCallbacks | None = None,
    ) -> RLMResult:
        """
        Answer ``query`` about ``context``.

        Args:
            context: Corpus loaded into the REPL as `context`
            query: Question to answer
            messages: Chat messages to derive context and query from when
                either is not given (system messages -> context, last user
                message -> query)
            abort_signal: Event cancelling every pending model call once set
            timeout: Per-block execution timeout in seconds for this call
                (settings.execution_timeout if None)
            callbacks: Optional observers of the loop

        Raises:
            ServiceError: A root model call failed
            HookAbortError: A hook aborted the run
        """
        if messages is not None and (context is None or query is None):
            derived_context, derived_query = context_from_messages(messages)
            context = derived_context if context is None else context
            query = derived_query if query is None else query
        if query is None:
            raise ValueError("query must be given directly or through messages")
        if context is None:
            context = DEFAULT_CONTEXT

        logger.info(
            "Starting RLM task | query={} | model={} | max_iterations={} | max_depth={}",
            query[:50] + "..." if len(query) > 50 else query,
            self.model or "<client default>",
            self.settings.max_iterations,
            self.settings.max_depth,
        )

        runner = self
        if timeout is not None:
            runner = RLMAgent(
                llm_client=self.llm_client,
                settings=self.settings.model_copy(update={"execution_timeout": timeout}),
                sub_llm_client=self.sub_llm_client,
            )

        result = await runner.run(
            context=context,
            query=query,
            abort_signal=abort_signal,
            callbacks=callbacks,
        )

        logger.success(
            "RLM task completed | iterations={} | llm_calls={} | total_tokens={}",
            result.iterations,
            result.llm_call_count,
            result.usage.total_tokens,
        )
        return result

    async def stream(
        self,
        context: RLMContext | None = None,
        query: str | None = None,
        **kwargs: t.Any,
    ) -> RLMStreamResult:
        """Like generate(), with the answer also exposed as a one-chunk stream."""
        result = await self.generate(context, query, **kwargs)
        return RLMStreamResult(
            text=result.text,
            steps=result.steps,
            llm_call_count=result.llm_call_count,
            iterations=result.iterations,
            usage=result.usage,
        )

    async def run(
        self,
        context: RLMContext,
        query: str,
        *,
        depth: int = 0,
        abort_signal: asyncio.Event | None = None,
        callbacks: RLMCallbacks | None = None,
    ) -> RLMResult:
        """Run the REPL loop at ``depth``. The session is always released."""
        settings = self.settings
        callbacks = callbacks or RLMCallbacks()
        log = logger.info if settings.verbose else logger.debug
        model = self.model

        session = SandboxSession(
            llm_client=self.llm_client,
            settings=settings,
            sub_llm_client=self.sub_llm_client,
            depth=depth,
            abort_signal=abort_signal,
            callbacks=callbacks,
        )
        steps: list[Step] = []
        root_calls = 0
        root_usage = UsageSummary()

        def finish(text: str, iterations: int) -> RLMResult:
            return RLMResult(
                text=text,
                steps=list(steps),
                llm_call_count=root_calls + session.budget.call_count,
                iterations=iterations,
                usage=root_usage.merged(session.usage),
            )

        try:
            session.load(context)
            messages: list[ChatCompletionMessageParam] = [
                {
                    "role": "system",
                    "content": str(
                        _templates.system_prompt(
                            preview_chars=settings.max_history_preview
                        )
                    ),
                },
                {
                    "role": "user",
                    "content": str(
                        _templates.task_prompt(
                            meta=describe_context(context), query=query
                        )
                    ),
                },
            ]

            for iteration in range(settings.max_iterations):
                iteration_model = model
                max_output_chars = settings.max_output_chars

                await fire(
                    callbacks.on_iteration_start,
                    IterationStartEvent(iteration=iteration + 1, messages=list(messages)),
                )

                hook_result = await run_hook(
                    settings.prepare_iteration,
                    PrepareIterationContext(
                        iteration=iteration + 1,
                        max_iterations=settings.max_iterations,
                        depth=depth,
                        model=model,
                        max_output_chars=max_output_chars,
                        llm_call_count=root_calls + session.budget.call_count,
                        messages=list(messages),
                        steps=list(steps),
                        usage=root_usage.merged(session.usage),
                    ),
                    PrepareIterationResult,
                )
                if hook_result is not None:
                    if hook_result.action == "abort":
                        raise HookAbortError(
                            hook_result.reason or "prepare_iteration aborted execution"
                        )
                    if hook_result.action == "finalize":
                        log(
                            "Finalized by prepare_iteration | depth={} | iteration={}",
                            depth,
                            iteration + 1,
                        )
                        return finish(hook_result.final_answer or "", iteration)
                    if hook_result.messages is not None:
                        messages = list(hook_result.messages)
                    iteration_model = hook_result.model or model
                    max_output_chars = hook_result.max_output_chars or max_output_chars

                log(
                    "RLM iteration | depth={} | iteration={}/{} | model={}",
                    depth,
                    iteration + 1,
                    settings.max_iterations,
                    iteration_model,
                )

                started = time.perf_counter()
                response = await self._call_model(
                    messages,
                    iteration_model,
                    depth=depth,
                    iteration=len(steps),
                    abort_signal=abort_signal,
                    callbacks=callbacks,
                )
                root_calls += 1
                root_usage.add(UsageSummary.from_raw(response.usage))
                text = response.content

                code_blocks = extract_code_blocks(text)
                marker = extract_final(text)

                if code_blocks:
                    code = code_blocks[0]
                    try:
                        execution = await session.execute(code)
                    except ExecutionError as e:
                        await fire(
                            callbacks.on_error,
                            ErrorEvent(
                                iteration=len(steps),
                                phase="execution",
                                error=e,
                                context=f"Code execution failed: {code[:100]}",
                            ),
                        )
                        execution = ExecutionResult(error=str(e))

                    output = compose_output(execution, max_output_chars)
                    step = Step(
                        iteration=iteration + 1,
                        reasoning=extract_reasoning(text),
                        code=code,
                        output=output,
                    )
                    steps.append(step)
                    messages.append({"role": "assistant", "content": text})
                    messages.append(
                        {
                            "role": "user",
                            "content": output_metadata(
                                output, execution.error, settings.max_history_preview
                            ),
                        }
                    )
                    log(
                        "Executed code | depth={} | iteration={} | output_chars={} | error={}",
                        depth,
                        iteration + 1,
                        len(output),
                        execution.error is not None,
                    )
                    await fire(
                        callbacks.on_iteration_complete,
                        IterationCompleteEvent(
                            iteration=iteration + 1,
                            step=step,
                            llm_response=text,
                            execution_time_ms=(time.perf_counter() - started) * 1000,
                        ),
                    )

                if marker is not None:
                    try:
                        answer = self._resolve_final(marker, session)
                    except UnresolvedVariableError as e:
                        logger.warning(
                            "FINAL_VAR target missing | variable={} | depth={} | iteration={}",
                            e.name,
                            depth,
                            iteration + 1,
                        )
                        await fire(
                            callbacks.on_error,
                            ErrorEvent(
                                iteration=len(steps),
                                phase="parse",
                                error=e,
                                context=f"FINAL_VAR({e.name})",
                            ),
                        )
                        if not code_blocks:
                            messages.append({"role": "assistant", "content": text})
                        messages.append(
                            {"role": "user", "content": str(_templates.missing_variable(e.name))}
                        )
                        continue

                    if not code_blocks:
                        prefix = "FINAL_VAR" if marker.kind == "variable" else "FINAL"
                        await fire(
                            callbacks.on_iteration_complete,
                            IterationCompleteEvent(
                                iteration=iteration + 1,
                                step=Step(
                                    iteration=iteration + 1,
                                    reasoning=text[:200],
                                    code=f"{prefix}({marker.value})",
                                    output=f"Final answer: {answer}",
                                ),
                                llm_response=text,
                                execution_time_ms=(time.perf_counter() - started) * 1000,
                            ),
                        )

                    log(
                        "Final answer | depth={} | iteration={} | kind={}",
                        depth,
                        iteration + 1,
                        marker.kind,
                    )
                    return finish(answer, iteration + 1)

                if not code_blocks:
                    messages.append({"role": "assistant", "content": text})
                    messages.append(
                        {"role": "user", "content": str(_templates.missing_code())}
                    )

            logger.warning(
                "Maximum iterations reached, forcing final answer | depth={} | max_iterations={}",
                depth,
                settings.max_iterations,
            )
            messages.append(
                {"role": "user", "content": str(_templates.max_iterations_reached())}
            )
            response = await self._call_model(
                messages,
                model,
                depth=depth,
                iteration=len(steps),
                abort_signal=abort_signal,
                callbacks=callbacks,
            )
            root_calls += 1
            root_usage.add(UsageSummary.from_raw(response.usage))

            marker = extract_final(response.content)
            if marker is None:
                return finish(response.content, settings.max_iterations)
            try:
                answer = self._resolve_final(marker, session)
            except UnresolvedVariableError as e:
                answer = f"[Variable {e.name} not found]"
            return finish(answer, settings.max_iterations)

        finally:
            session.cleanup()

    async def _call_model(
        self,
        messages: list[ChatCompletionMessageParam],
        model: str,
        *,
        depth: int,
        iteration: int,
        abort_signal: asyncio.Event | None,
        callbacks: RLMCallbacks,
    ) -> TextResponse:
        """One root model call; any failure becomes a ServiceError."""
        try:
            response = await self.llm_client.agenerate(
                list(messages), model=model or None, abort_signal=abort_signal
            )
        except Exception as e:
            await fire(
                callbacks.on_error,
                ErrorEvent(
                    iteration=iteration,
                    phase="llm",
                    error=e,
                    context="Root model call failed",
                ),
            )
            raise ServiceError(f"Model call failed: {e}") from e

        await fire(
            callbacks.on_llm_call,
            LLMCallEvent(model=model, depth=depth, messages=list(messages)),
        )
        return response

    @staticmethod
    def _resolve_final(marker: FinalMarker, session: SandboxSession) -> str:
        if marker.kind == "direct":
            return marker.value
        value = session.read_binding(marker.value)
        if value is MISSING:
            raise UnresolvedVariableError(marker.value)
        return render_value(value)
