"""
Execution engines for model-authored code.

The sandbox session talks to its interpreter through the ExecutionEngine
protocol {load, execute, read_binding, dispose}. RestrictedPythonEngine is the
in-process implementation:

- guest code runs with a reduced set of builtins and an import allowlist
- the AST is screened for dunder access before anything runs
- each snippet runs on a worker thread so bridge functions can block the
  guest while the host event loop keeps serving model calls
- the wall-clock budget is enforced twice: a trace function interrupts
  runaway Python loops, and the host stops waiting once the budget is spent
- the value of a trailing expression is the completion value, REPL style;
  awaitable completion values are settled before they are returned

The restrictions keep honest models from wandering off. They are not a
security boundary.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import functools
import importlib
import inspect
import sys
import threading
import time
import typing as t
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from types import MappingProxyType, ModuleType

from loguru import logger

from rlm_agents.errors import ExecutionError


class _Missing:
    """Marker for a name that could not be resolved."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: t.Final = _Missing()

ALLOWED_MODULES: tuple[str, ...] = (
    "bisect",
    "collections",
    "datetime",
    "difflib",
    "functools",
    "heapq",
    "itertools",
    "json",
    "math",
    "operator",
    "random",
    "re",
    "statistics",
    "string",
    "textwrap",
)

# Modules already bound in every fresh namespace
PRELOADED_MODULES: tuple[str, ...] = ("re", "json", "math")

SAFE_BUILTIN_NAMES: tuple[str, ...] = (
    "__build_class__",
    "abs",
    "all",
    "any",
    "ascii",
    "bin",
    "bool",
    "bytes",
    "callable",
    "chr",
    "classmethod",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "frozenset",
    "hasattr",
    "hash",
    "hex",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "object",
    "oct",
    "ord",
    "pow",
    "property",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "staticmethod",
    "str",
    "sum",
    "super",
    "tuple",
    "zip",
    # exceptions guest code may raise or catch
    "ArithmeticError",
    "AssertionError",
    "AttributeError",
    "Exception",
    "IndexError",
    "KeyError",
    "LookupError",
    "NameError",
    "NotImplementedError",
    "RuntimeError",
    "StopIteration",
    "TimeoutError",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


class SecurityError(Exception):
    """Guest code tried to reach something the sandbox does not expose."""

    pass


class _GuestTimeout(BaseException):
    """Raised inside the guest thread once its budget is spent.

    BaseException so that ``except Exception`` in guest code cannot absorb it.
    """

    pass


def timeout_message(timeout: float) -> str:
    return f"TimeoutError: Execution timed out after {timeout:g}s"


def format_exception(exc: BaseException) -> str:
    if isinstance(exc, SyntaxError):
        return f"SyntaxError: {exc.msg} (line {exc.lineno})"
    return f"{type(exc).__name__}: {exc}"


@dataclass(frozen=True)
class GuestRuntime:
    """Process-wide pieces shared by every engine instance."""

    builtins: t.Mapping[str, t.Any]
    modules: t.Mapping[str, ModuleType]
    executor: ThreadPoolExecutor


def _make_guest_import(modules: t.Mapping[str, ModuleType]) -> t.Callable[..., t.Any]:
    def guest_import(
        name: str,
        globals: t.Any = None,
        locals: t.Any = None,
        fromlist: t.Sequence[str] = (),
        level: int = 0,
    ) -> ModuleType:
        root = name.partition(".")[0]
        if level or root not in modules:
            raise ImportError(f"Import of '{name}' is not allowed in the REPL")
        module = importlib.import_module(name)
        return module if fromlist else modules[root]

    return guest_import


@functools.lru_cache(maxsize=1)
def get_guest_runtime() -> GuestRuntime:
    """Build the guest runtime once per process and reuse it afterwards."""
    modules = {name: importlib.import_module(name) for name in ALLOWED_MODULES}
    safe_builtins = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
    safe_builtins["__import__"] = _make_guest_import(modules)

    logger.debug(
        "Guest runtime ready | builtins={} | modules={}",
        len(safe_builtins),
        len(modules),
    )
    return GuestRuntime(
        builtins=MappingProxyType(safe_builtins),
        modules=MappingProxyType(modules),
        executor=ThreadPoolExecutor(max_workers=64, thread_name_prefix="rlm-guest"),
    )


class _GuestCodeValidator(ast.NodeVisitor):
    """Reject dunder names and attributes before the code runs."""

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("__"):
            raise SecurityError(f"Access to attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            raise SecurityError(f"Access to name '{node.id}' is not allowed")
        self.generic_visit(node)


_BINDING_PATH_NODES = (
    ast.Expression,
    ast.Name,
    ast.Attribute,
    ast.Subscript,
    ast.Constant,
    ast.Load,
    ast.UnaryOp,
    ast.USub,
)


def _is_binding_path(tree: ast.AST) -> bool:
    """True for expressions like ``results["total"]`` or ``report.summary``."""
    for node in ast.walk(tree):
        if not isinstance(node, _BINDING_PATH_NODES):
            return False
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            return False
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            return False
    return True


@dataclass
class EngineResult:
    """What one execute() call produced, apart from captured output."""

    error: str | None = None
    value: t.Any = None
    has_value: bool = False


class ExecutionEngine(t.Protocol):
    """Contract between a sandbox session and its interpreter."""

    def load(self, bindings: t.Mapping[str, t.Any]) -> None: ...

    async def execute(
        self,
        code: str,
        timeout: float,
        on_timeout: t.Callable[[], None] | None = None,
    ) -> EngineResult: ...

    def read_binding(self, name: str) -> t.Any: ...

    def dispose(self) -> None: ...


class RestrictedPythonEngine:
    """Runs guest Python in a persistent restricted namespace.

    Variables, functions and imports survive between execute() calls, which is
    what lets the model build on earlier iterations.
    """

    def __init__(self, runtime: GuestRuntime | None = None) -> None:
        self._runtime = runtime or get_guest_runtime()
        self._namespace: dict[str, t.Any] = {
            "__builtins__": dict(self._runtime.builtins),
            "__name__": "__repl__",
        }
        for name in PRELOADED_MODULES:
            self._namespace[name] = self._runtime.modules[name]
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def load(self, bindings: t.Mapping[str, t.Any]) -> None:
        if self._disposed:
            raise ExecutionError("Engine has been disposed")
        self._namespace.update(bindings)

    async def execute(
        self,
        code: str,
        timeout: float,
        on_timeout: t.Callable[[], None] | None = None,
    ) -> EngineResult:
        """Run ``code`` on a guest thread within ``timeout`` seconds.

        Guest failures come back as EngineResult.error. ExecutionError is
        raised only when the engine itself cannot run the code.
        """
        if self._disposed:
            raise ExecutionError("Engine has been disposed")

        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        deadline = time.monotonic() + timeout
        try:
            future = loop.run_in_executor(
                self._runtime.executor, self._run, code, deadline, timeout, cancelled
            )
        except RuntimeError as e:
            raise ExecutionError(f"Could not schedule guest code: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            cancelled.set()
            if on_timeout is not None:
                on_timeout()
            logger.warning("Guest code timed out | timeout={}s", timeout)
            return EngineResult(error=timeout_message(timeout))

    def _run(
        self,
        code: str,
        deadline: float,
        timeout: float,
        cancelled: threading.Event,
    ) -> EngineResult:
        """Guest thread body."""
        try:
            tree = ast.parse(code, filename="<repl>", mode="exec")
            _GuestCodeValidator().visit(tree)
        except (SyntaxError, SecurityError) as e:
            return EngineResult(error=format_exception(e))

        trailing: ast.Expression | None = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            trailing = ast.Expression(body=tree.body.pop().value)

        def tracer(frame: t.Any, event: str, arg: t.Any) -> t.Any:
            # Only guest frames are interrupted; asyncio internals must unwind cleanly.
            if frame.f_code.co_filename != "<repl>":
                return None
            if cancelled.is_set() or time.monotonic() > deadline:
                raise _GuestTimeout()
            return tracer

        # Settlement runs under the tracer too, so guest coroutines share the deadline.
        sys.settrace(tracer)
        try:
            exec(compile(tree, "<repl>", "exec"), self._namespace)
            value = None
            if trailing is not None:
                value = eval(compile(trailing, "<repl>", "eval"), self._namespace)
            value = self._settle(value, deadline)
        except (_GuestTimeout, asyncio.TimeoutError, FutureTimeoutError):
            return EngineResult(error=timeout_message(timeout))
        except Exception as e:
            return EngineResult(error=format_exception(e))
        finally:
            sys.settrace(None)

        return EngineResult(value=value, has_value=value is not None)

    @staticmethod
    def _settle(value: t.Any, deadline: float) -> t.Any:
        """Wait for a pending completion value to produce its result."""
        remaining = max(0.0, deadline - time.monotonic())
        if isinstance(value, Future):
            return value.result(timeout=remaining)
        if inspect.isawaitable(value):

            async def settle() -> t.Any:
                return await asyncio.wait_for(value, remaining)

            # The guest thread has no running loop of its own.
            return asyncio.run(settle())
        return value

    def read_binding(self, name: str) -> t.Any:
        """Look up a binding by name; MISSING when it cannot be resolved.

        Plain identifiers are read straight from the namespace. Simple paths
        such as ``result["answer"]`` or ``report.summary`` are evaluated, but
        nothing that could call code.
        """
        name = name.strip()
        if self._disposed or not name or name.startswith("_"):
            return MISSING
        if name.isidentifier():
            return self._namespace.get(name, MISSING)

        try:
            tree = ast.parse(name, mode="eval")
        except SyntaxError:
            return MISSING
        if not _is_binding_path(tree):
            return MISSING
        try:
            return eval(compile(tree, "<binding>", "eval"), self._namespace)
        except Exception:  # noqa: BLE001
            return MISSING

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._namespace.clear()
