"""Tests for RestrictedPythonEngine.

Test Classes and Methods
========================

TestExecution
    - test_trailing_expression_is_completion_value
    - test_bindings_persist_between_runs
    - test_statement_only_has_no_value
    - test_preloaded_modules
    - test_allowed_import
    - test_class_definition

TestFailures
    - test_syntax_error_reported
    - test_runtime_error_reported
    - test_dunder_access_blocked
    - test_disallowed_import
    - test_unsafe_builtins_absent
    - test_timeout_interrupts_loop
    - test_timeout_calls_hook
    - test_guest_cannot_catch_timeout
    - test_timeout_stops_guest_coroutine

TestReadBinding
    - test_plain_name
    - test_missing_name
    - test_path_expression
    - test_call_expression_refused

TestLifecycle
    - test_runtime_shared
    - test_dispose_idempotent
    - test_execute_after_dispose_raises
"""

import asyncio

import pytest

from rlm_agents.errors import ExecutionError
from rlm_agents.sandbox.engine import MISSING, RestrictedPythonEngine, get_guest_runtime


@pytest.fixture
def engine() -> RestrictedPythonEngine:
    engine = RestrictedPythonEngine()
    yield engine
    engine.dispose()


class TestExecution:
    """Tests for successful runs."""

    @pytest.mark.asyncio
    async def test_trailing_expression_is_completion_value(self, engine):
        result = await engine.execute("a = 7\na * 6", timeout=5)
        assert result.error is None
        assert result.has_value is True
        assert result.value == 42

    @pytest.mark.asyncio
    async def test_bindings_persist_between_runs(self, engine):
        await engine.execute("def double(x):\n    return x * 2\ncount = 3", timeout=5)
        result = await engine.execute("double(count)", timeout=5)
        assert result.value == 6

    @pytest.mark.asyncio
    async def test_statement_only_has_no_value(self, engine):
        result = await engine.execute("x = 1", timeout=5)
        assert result.has_value is False
        assert result.value is None

    @pytest.mark.asyncio
    async def test_preloaded_modules(self, engine):
        result = await engine.execute("re.findall(r'\\d', 'a1b2') + [math.floor(2.5)]", timeout=5)
        assert result.value == ["1", "2", 2]

    @pytest.mark.asyncio
    async def test_allowed_import(self, engine):
        result = await engine.execute(
            "from collections import Counter\nCounter('aab').most_common(1)", timeout=5
        )
        assert result.value == [("a", 2)]

    @pytest.mark.asyncio
    async def test_class_definition(self, engine):
        result = await engine.execute(
            "class Box:\n    def __init__(self, v):\n        self.v = v\nBox(3).v",
            timeout=5,
        )
        assert result.error is None
        assert result.value == 3


class TestFailures:
    """Tests for guest failures, reported as errors."""

    @pytest.mark.asyncio
    async def test_syntax_error_reported(self, engine):
        result = await engine.execute("x = (", timeout=5)
        assert result.error.startswith("SyntaxError:")
        assert "(line 1)" in result.error

    @pytest.mark.asyncio
    async def test_runtime_error_reported(self, engine):
        result = await engine.execute("missing_name + 1", timeout=5)
        assert result.error == "NameError: name 'missing_name' is not defined"

    @pytest.mark.asyncio
    async def test_dunder_access_blocked(self, engine):
        result = await engine.execute("().__class__.__bases__", timeout=5)
        assert result.error.startswith("SecurityError:")

    @pytest.mark.asyncio
    async def test_disallowed_import(self, engine):
        result = await engine.execute("import os", timeout=5)
        assert result.error == "ImportError: Import of 'os' is not allowed in the REPL"

    @pytest.mark.parametrize("name", ["open", "eval", "exec", "getattr", "compile"])
    @pytest.mark.asyncio
    async def test_unsafe_builtins_absent(self, engine, name):
        result = await engine.execute(name, timeout=5)
        assert result.error.startswith("NameError:")

    @pytest.mark.asyncio
    async def test_timeout_interrupts_loop(self, engine):
        result = await engine.execute("while True:\n    pass", timeout=0.2)
        assert result.error == "TimeoutError: Execution timed out after 0.2s"

        after = await engine.execute("1 + 1", timeout=5)
        assert after.value == 2

    @pytest.mark.asyncio
    async def test_timeout_calls_hook(self, engine):
        calls = []
        await engine.execute(
            "while True:\n    pass", timeout=0.1, on_timeout=lambda: calls.append(1)
        )
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_guest_cannot_catch_timeout(self, engine):
        code = "while True:\n    try:\n        pass\n    except Exception:\n        pass"
        result = await engine.execute(code, timeout=0.2)
        assert result.error.startswith("TimeoutError")

    @pytest.mark.asyncio
    async def test_timeout_stops_guest_coroutine(self, engine):
        code = (
            "state = {'n': 0}\n"
            "async def spin():\n"
            "    while True:\n"
            "        state['n'] += 1\n"
            "spin()"
        )
        result = await engine.execute(code, timeout=0.3)
        assert result.error == "TimeoutError: Execution timed out after 0.3s"

        await asyncio.sleep(0.2)
        count = engine.read_binding("state")["n"]
        await asyncio.sleep(0.3)
        assert engine.read_binding("state")["n"] == count

        after = await engine.execute("1 + 1", timeout=5)
        assert after.value == 2


class TestReadBinding:
    """Tests for read_binding."""

    @pytest.mark.asyncio
    async def test_plain_name(self, engine):
        await engine.execute("answer = 'yes'", timeout=5)
        assert engine.read_binding("answer") == "yes"

    def test_missing_name(self, engine):
        assert engine.read_binding("nope") is MISSING
        assert engine.read_binding("") is MISSING
        assert engine.read_binding("_private") is MISSING

    @pytest.mark.asyncio
    async def test_path_expression(self, engine):
        await engine.execute("report = {'items': [10, 20]}", timeout=5)
        assert engine.read_binding("report['items'][-1]") == 20
        assert engine.read_binding("report['absent']") is MISSING

    @pytest.mark.asyncio
    async def test_call_expression_refused(self, engine):
        await engine.execute("calls = []\ndef f():\n    calls.append(1)\n    return 1", timeout=5)
        assert engine.read_binding("f()") is MISSING
        assert engine.read_binding("calls") == []


class TestLifecycle:
    """Tests for dispose()."""

    def test_runtime_shared(self):
        assert get_guest_runtime() is get_guest_runtime()

    def test_dispose_idempotent(self):
        engine = RestrictedPythonEngine()
        engine.dispose()
        engine.dispose()
        assert engine.disposed
        assert engine.read_binding("re") is MISSING

    @pytest.mark.asyncio
    async def test_execute_after_dispose_raises(self):
        engine = RestrictedPythonEngine()
        engine.dispose()
        with pytest.raises(ExecutionError):
            await engine.execute("1", timeout=5)
