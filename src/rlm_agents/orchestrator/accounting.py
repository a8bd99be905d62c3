"""
Call budget and token usage accounting for recursive execution.

Each sandbox session owns one CallBudget and one UsageSummary. A nested
agent keeps its own pair while it runs; once it finishes, its totals are
folded into the parent's (depth-first composition, never live sharing).
"""

from __future__ import annotations

import math
import typing as t
from dataclasses import dataclass, fields, replace

from rlm_agents.errors import BudgetExceededError

# Provider field names accepted for each counter, in lookup order
_USAGE_ALIASES: dict[str, tuple[str, ...]] = {
    "input_tokens": ("input_tokens", "inputTokens", "prompt_tokens", "promptTokens"),
    "output_tokens": (
        "output_tokens",
        "outputTokens",
        "completion_tokens",
        "completionTokens",
    ),
    "total_tokens": ("total_tokens", "totalTokens"),
    "reasoning_tokens": ("reasoning_tokens", "reasoningTokens"),
    "cached_input_tokens": (
        "cached_input_tokens",
        "cachedInputTokens",
        "cached_tokens",
        "cachedTokens",
    ),
}

# Nested detail blocks (OpenAI style) that may hold the last two counters
_DETAIL_BLOCKS: dict[str, tuple[str, ...]] = {
    "reasoning_tokens": ("completion_tokens_details", "output_tokens_details"),
    "cached_input_tokens": ("prompt_tokens_details", "input_tokens_details"),
}


def to_token_count(value: t.Any) -> int:
    """Coerce a provider value to a non-negative int; anything unusable is 0."""
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(number)


def _as_mapping(raw: t.Any) -> dict[str, t.Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if hasattr(raw, "model_dump"):
        return raw.model_dump()
    return {}


@dataclass
class UsageSummary:
    """Token usage accumulated across model calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int = 0
    cached_input_tokens: int = 0

    @classmethod
    def from_raw(cls, raw: t.Any) -> UsageSummary:
        """Build a summary from whatever usage payload a provider returned.

        Accepts dicts or pydantic objects (e.g. openai's CompletionUsage).
        When the total is missing it is derived from input + output.
        """
        data = _as_mapping(raw)
        values: dict[str, int] = {}

        for name, aliases in _USAGE_ALIASES.items():
            found = next((data[alias] for alias in aliases if alias in data), None)
            if found is None:
                for block in _DETAIL_BLOCKS.get(name, ()):
                    details = _as_mapping(data.get(block))
                    if name == "cached_input_tokens":
                        found = details.get("cached_tokens")
                    else:
                        found = details.get(name)
                    if found is not None:
                        break
            values[name] = to_token_count(found)

        if "total_tokens" not in data and "totalTokens" not in data:
            values["total_tokens"] = values["input_tokens"] + values["output_tokens"]

        return cls(**values)

    def add(self, other: UsageSummary) -> None:
        """Add another summary's counters into this one."""
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def snapshot(self) -> UsageSummary:
        return replace(self)

    def merged(self, other: UsageSummary) -> UsageSummary:
        """Return a new summary holding the sum of both."""
        result = self.snapshot()
        result.add(other)
        return result


@dataclass
class CallBudget:
    """Ceiling on sub-model calls made from one session.

    consume() rejects the call that would exceed the ceiling before counting
    it, so call_count never passes max_calls through consume().
    """

    max_calls: int
    call_count: int = 0

    @property
    def exhausted(self) -> bool:
        return self.call_count >= self.max_calls

    @property
    def remaining(self) -> int:
        return max(0, self.max_calls - self.call_count)

    def consume(self) -> int:
        """Reserve one call and return the new count."""
        if self.exhausted:
            raise BudgetExceededError(self.call_count, self.max_calls)
        self.call_count += 1
        return self.call_count

    def absorb(self, calls: int) -> None:
        """Fold in the calls made by a completed nested agent."""
        self.call_count += max(0, calls)
