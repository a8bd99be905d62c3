"""
Sandbox session: one execution environment per orchestrator invocation.

The session exposes a fixed bridge API to model-authored code:

    print / log          append to the output buffer of the current execute()
    error                same, prefixed with "ERROR: "
    llm_query            one sub-model call, counted against the call budget
    llm_query_batched    several sub-model calls in parallel, order preserved
    sub_rlm              a nested RLMAgent one level deeper
    FINAL / FINAL_VAR    envelope constructors, they do not stop execution

Guest code runs on a worker thread. Bridge calls schedule a coroutine on the
host event loop and block the guest thread until it settles, so from the
guest's side every bridge is an ordinary synchronous call.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import copy
import typing as t
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from loguru import logger
from openai.types.chat import ChatCompletionMessageParam

from rlm_agents.errors import (
    BudgetExceededError,
    ContextAlreadyLoadedError,
    ExecutionError,
    HookAbortError,
    RecursiveCallError,
    ServiceError,
)
from rlm_agents.llm_core.llm_client import TextGenerationService
from rlm_agents.orchestrator.accounting import CallBudget, UsageSummary
from rlm_agents.orchestrator.hooks import (
    PrepareSubAgentContext,
    PrepareSubAgentResult,
    run_hook,
)
from rlm_agents.orchestrator.models import (
    LLMCallEvent,
    RLMCallbacks,
    RLMContext,
    fire,
)
from rlm_agents.sandbox.engine import MISSING, ExecutionEngine, RestrictedPythonEngine

if t.TYPE_CHECKING:
    from rlm_agents.orchestrator.rlm_agent import RLMAgentSettings

DEFAULT_SUB_CONTEXT = "No context provided"

T = t.TypeVar("T")


@dataclass
class ExecutionResult:
    """Observable effects of one execute() call."""

    stdout: str = ""
    error: str | None = None
    result: t.Any = None
    has_result: bool = False


def normalize_context(context: t.Any) -> RLMContext:
    """Copy a context into one of the three supported shapes."""
    if isinstance(context, str):
        return context
    if isinstance(context, Mapping):
        return {str(key): copy.deepcopy(value) for key, value in context.items()}
    if isinstance(context, Sequence) and not isinstance(context, (bytes, bytearray)):
        return [copy.deepcopy(item) for item in context]
    raise TypeError(
        f"context must be a str, a sequence of str or a mapping, got {type(context).__name__}"
    )


def final_direct(value: t.Any) -> dict[str, t.Any]:
    return {"type": "final", "value": value}


def final_by_reference(name: t.Any) -> dict[str, t.Any]:
    return {"type": "final_var", "name": str(name)}


async def _cancel_and_wait(tasks: Iterable[asyncio.Future[t.Any]]) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class SandboxSession:
    """
    One isolated REPL bound to a single RLMAgent invocation.

    The session owns the call budget and usage summary of its invocation.
    Nested agents spawned through sub_rlm() keep their own; their totals are
    folded in here after they finish.

    Usage:
        session = SandboxSession(llm_client=client, settings=settings)
        try:
            session.load(context)
            result = await session.execute("len(context)")
        finally:
            session.cleanup()
    """

    def __init__(
        self,
        llm_client: TextGenerationService,
        settings: RLMAgentSettings,
        sub_llm_client: TextGenerationService | None = None,
        depth: int = 0,
        abort_signal: asyncio.Event | None = None,
        callbacks: RLMCallbacks | None = None,
        engine: ExecutionEngine | None = None,
    ) -> None:
        self._llm_client = llm_client
        self._sub_llm_client = sub_llm_client or llm_client
        self.settings = settings
        self.depth = depth
        self._abort_signal = abort_signal
        self._callbacks = callbacks or RLMCallbacks()

        self.budget = CallBudget(max_calls=settings.max_llm_calls)
        self.usage = UsageSummary()

        self._engine: ExecutionEngine = engine or RestrictedPythonEngine()
        self._output: list[str] = []
        self._context_loaded = False
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[concurrent.futures.Future[t.Any]] = set()
        self._fatal_error: HookAbortError | None = None

        self._engine.load(
            {
                "print": self._guest_print,
                "log": self._guest_print,
                "error": self._guest_error,
                "llm_query": self._guest_llm_query,
                "llm_query_batched": self._guest_llm_query_batched,
                "sub_rlm": self._guest_sub_rlm,
                "FINAL": final_direct,
                "FINAL_VAR": final_by_reference,
            }
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def load(self, context: t.Any) -> None:
        """Bind ``context`` in the REPL. Allowed once per session."""
        if self._context_loaded:
            raise ContextAlreadyLoadedError(
                "Context has already been loaded into this session"
            )
        if self._closed:
            raise ExecutionError("Sandbox session is closed")
        self._engine.load({"context": normalize_context(context)})
        self._context_loaded = True

    async def execute(self, code: str) -> ExecutionResult:
        """Run one snippet. Guest failures are returned, not raised.

        Raises:
            ExecutionError: the session cannot run code at all
            HookAbortError: a hook aborted a nested agent during the snippet
        """
        if self._closed:
            raise ExecutionError("Sandbox session is closed")
        if not self._context_loaded:
            raise ExecutionError("Context has not been loaded")

        self._output = []
        self._loop = asyncio.get_running_loop()
        try:
            outcome = await self._engine.execute(
                code,
                timeout=self.settings.execution_timeout,
                on_timeout=self._cancel_pending,
            )
        finally:
            self._loop = None

        if self._fatal_error is not None:
            fatal, self._fatal_error = self._fatal_error, None
            raise fatal

        return ExecutionResult(
            stdout="".join(self._output).rstrip("\n"),
            error=outcome.error,
            result=outcome.value,
            has_result=outcome.has_value,
        )

    def read_binding(self, name: str) -> t.Any:
        """Current value of ``name`` in the REPL, or MISSING. Never raises."""
        if self._closed:
            return MISSING
        try:
            return self._engine.read_binding(name)
        except Exception:  # noqa: BLE001
            logger.opt(exception=True).debug("Binding lookup failed | name={}", name)
            return MISSING

    def cleanup(self) -> None:
        """Release the engine. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._cancel_pending()
        try:
            self._engine.dispose()
        except Exception:  # noqa: BLE001
            logger.opt(exception=True).debug(
                "Sandbox teardown raised | depth={}", self.depth
            )

    def _cancel_pending(self) -> None:
        for future in list(self._pending):
            future.cancel()

    # Host-side bridge implementations

    async def llm_query(self, prompt: str) -> str:
        """One sub-model call, counted before it is made."""
        self.budget.consume()
        model = self.settings.resolved_sub_model(self._sub_llm_client)
        messages: list[ChatCompletionMessageParam] = [
            {"role": "user", "content": prompt}
        ]
        await fire(
            self._callbacks.on_llm_call,
            LLMCallEvent(model=model, depth=self.depth, is_sub_call=True, prompt=prompt),
        )

        try:
            response = await self._sub_llm_client.agenerate(
                messages, model=model or None, abort_signal=self._abort_signal
            )
        except Exception as e:
            raise ServiceError(f"llm_query failed: {e}") from e

        self.usage.add(UsageSummary.from_raw(response.usage))
        return response.content

    async def llm_query_batched(self, prompts: t.Sequence[str]) -> list[str]:
        """All prompts run concurrently; any failure fails the whole batch.

        On the first failure the remaining queries are cancelled and awaited
        before the error is raised, so none of them outlives the batch.
        """
        tasks = [asyncio.ensure_future(self.llm_query(p)) for p in prompts]
        if not tasks:
            return []
        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            await _cancel_and_wait(tasks)
            raise

        if pending:
            await _cancel_and_wait(pending)
        for task in tasks:
            if task in done and not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return [task.result() for task in tasks]

    async def sub_rlm(self, prompt: str, sub_context: t.Any = None) -> str:
        """Run a nested agent one level deeper and return its answer.

        At the depth floor this is exactly llm_query().
        """
        settings = self.settings
        if self.depth >= settings.max_depth - 1:
            return await self.llm_query(prompt)

        if self.budget.exhausted:
            raise BudgetExceededError(self.budget.call_count, self.budget.max_calls)

        hook_result = await run_hook(
            settings.prepare_sub_agent,
            PrepareSubAgentContext(
                depth=self.depth,
                max_depth=settings.max_depth,
                prompt=prompt,
                sub_context=sub_context,
                llm_call_count=self.budget.call_count,
                max_llm_calls=self.budget.max_calls,
                usage=self.usage.snapshot(),
            ),
            PrepareSubAgentResult,
        )

        overrides: dict[str, t.Any] = {}
        if hook_result is not None:
            if hook_result.prompt is not None:
                prompt = hook_result.prompt
            if "sub_context" in hook_result.model_fields_set:
                sub_context = hook_result.sub_context
            overrides = hook_result.sub_agent_settings or {}

            if hook_result.action == "abort":
                self._fatal_error = HookAbortError(
                    hook_result.reason or "prepare_sub_agent aborted sub-agent execution"
                )
                raise self._fatal_error
            if hook_result.action == "fallback_to_llm_query":
                return await self.llm_query(prompt)

        child_settings = settings.model_copy(
            update={
                "max_iterations": max(5, settings.max_iterations // 2),
                "max_llm_calls": max(10, settings.max_llm_calls // 2),
                **overrides,
            }
        )

        from rlm_agents.orchestrator.rlm_agent import RLMAgent

        child = RLMAgent(
            llm_client=self._llm_client,
            settings=child_settings,
            sub_llm_client=self._sub_llm_client,
        )
        logger.info(
            "Spawning sub-agent | depth={} | max_iterations={} | max_llm_calls={}",
            self.depth + 1,
            child_settings.max_iterations,
            child_settings.max_llm_calls,
        )

        try:
            result = await child.run(
                context=sub_context if sub_context else DEFAULT_SUB_CONTEXT,
                query=prompt,
                depth=self.depth + 1,
                abort_signal=self._abort_signal,
                callbacks=self._callbacks,
            )
        except HookAbortError as e:
            self._fatal_error = e
            raise
        except Exception as e:
            raise RecursiveCallError(f"sub_rlm failed: {e}") from e

        self.budget.absorb(result.llm_call_count)
        self.usage.add(result.usage)
        return result.text

    # Guest-side bridge functions, called on the guest thread

    def _call_host(self, coro: t.Coroutine[t.Any, t.Any, T]) -> T:
        """Run ``coro`` on the host loop and block the guest until it settles."""
        loop = self._loop
        if loop is None or self._closed:
            coro.close()
            raise ExecutionError("Bridge functions are only available while code runs")

        future = asyncio.run_coroutine_threadsafe(coro, loop)
        self._pending.add(future)
        try:
            return future.result()
        finally:
            self._pending.discard(future)

    def _guest_print(self, *args: t.Any, sep: str = " ", end: str = "\n") -> None:
        self._output.append(sep.join(str(arg) for arg in args) + end)

    def _guest_error(self, *args: t.Any, sep: str = " ", end: str = "\n") -> None:
        self._output.append("ERROR: " + sep.join(str(arg) for arg in args) + end)

    def _guest_llm_query(self, prompt: t.Any) -> str:
        return self._call_host(self.llm_query(str(prompt)))

    def _guest_llm_query_batched(self, prompts: t.Any) -> list[str]:
        if isinstance(prompts, (str, bytes)) or not isinstance(prompts, Iterable):
            raise TypeError("llm_query_batched expects a list of prompts")
        return self._call_host(self.llm_query_batched([str(p) for p in prompts]))

    def _guest_sub_rlm(self, prompt: t.Any, sub_context: t.Any = None) -> str:
        return self._call_host(self.sub_rlm(str(prompt), sub_context))
