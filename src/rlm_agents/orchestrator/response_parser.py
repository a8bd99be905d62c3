"""Extract code blocks and final-answer markers from model responses.

Markers are matched textually on the response with every fenced block
removed, so ``FINAL(...)`` written inside example code never ends the loop.
"""

import re
import typing as t
from dataclasses import dataclass

_FENCED_BLOCK_PATTERN = re.compile(r"```([^\n`]*)\n(.*?)```", flags=re.DOTALL)
_ANY_FENCE_PATTERN = re.compile(r"```.*?```", flags=re.DOTALL)

# Untagged fences and Python-tagged fences are executable; other tags are not.
_EXECUTABLE_TAGS = frozenset({"", "python", "py", "python3"})

_FINAL_VAR_PATTERN = re.compile(
    r"FINAL_VAR\s*\(\s*[\"']?([^\"')\s]+)[\"']?\s*\)", flags=re.IGNORECASE
)
_FINAL_PATTERN = re.compile(
    r"FINAL\s*\(\s*[\"']?([^\"')]+)[\"']?\s*\)", flags=re.IGNORECASE
)


@dataclass(frozen=True)
class FinalMarker:
    """A final-answer marker found in a response.

    kind is "direct" (value is the literal answer) or "variable" (value is the
    name of a REPL binding holding the answer).
    """

    kind: t.Literal["direct", "variable"]
    value: str


def extract_code_blocks(text: str) -> list[str]:
    """Return the trimmed contents of executable fenced blocks, in order."""
    blocks = []
    for tag, body in _FENCED_BLOCK_PATTERN.findall(text):
        if tag.strip().lower() not in _EXECUTABLE_TAGS:
            continue
        code = body.strip()
        if code:
            blocks.append(code)
    return blocks


def strip_code_blocks(text: str) -> str:
    return _ANY_FENCE_PATTERN.sub("", text)


def extract_final(text: str) -> FinalMarker | None:
    """Find a FINAL_VAR or FINAL marker outside fenced code.

    FINAL_VAR wins when both appear. Returns None if neither matches or the
    captured content is empty.
    """
    prose = strip_code_blocks(text)

    var_match = _FINAL_VAR_PATTERN.search(prose)
    if var_match:
        name = var_match.group(1).strip().strip("\"'")
        return FinalMarker(kind="variable", value=name) if name else None

    direct_match = _FINAL_PATTERN.search(prose)
    if direct_match:
        answer = direct_match.group(1).strip()
        return FinalMarker(kind="direct", value=answer) if answer else None

    return None


def extract_reasoning(text: str) -> str:
    """Text written before the first fence."""
    return text.split("```", 1)[0].strip()
