"""Exceptions raised by the recursive loop and its sandbox."""


class RLMError(Exception):
    """Base exception for recursive language model errors."""

    pass


class BudgetExceededError(RLMError):
    """The sub-model call ceiling has been reached."""

    def __init__(self, call_count: int, max_calls: int):
        super().__init__(
            f"Maximum LLM calls ({max_calls}) exceeded. "
            f"Used {call_count}/{max_calls} calls."
        )
        self.call_count = call_count
        self.max_calls = max_calls


class ContextAlreadyLoadedError(RLMError):
    """A sandbox session received a second context."""

    pass


class ExecutionError(RLMError):
    """The sandbox could not run a snippet of guest code."""

    pass


class ServiceError(RLMError):
    """A text-generation call failed."""

    pass


class RecursiveCallError(RLMError):
    """A nested agent spawned from guest code failed."""

    pass


class UnresolvedVariableError(RLMError):
    """FINAL_VAR pointed at a name that is not bound in the sandbox."""

    def __init__(self, name: str):
        super().__init__(f"Variable '{name}' is not defined in the REPL state")
        self.name = name


class HookAbortError(RLMError):
    """A hook asked to terminate the invocation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
