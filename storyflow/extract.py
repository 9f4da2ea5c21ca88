"""Best-effort JSON recovery from free-text model output.

Models wrap their answer in markdown fences, prefix it with chain-of-thought
inside <think>...</think>, or get cut off at the token limit. parse_partial_json
undoes those in order and stops at the first strict parse that succeeds:

  1. drop paired reasoning spans
  2. drop a surrounding code fence (closing fence optional)
  3. strict parse
  4. slice from the first { or [ to its balancing closer; no closer means the
     output was truncated and everything from the opener on is kept
  5. close a dangling string literal
  6. append the missing } / ] in nesting order
  7. strict parse again, else ParseFailure

Bracket counting is naive: braces inside string literals are counted too, so
content such as "a {curly} remark" can throw the balance off.
"""

from __future__ import annotations

import json
import re
from typing import Any

PREVIEW_CHARS = 200

_REASONING_RE = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_FENCE_OPEN_RE = re.compile(r"^```[\w+-]*[ \t]*\n?")
_TRAILING_COMMA_RE = re.compile(r",\s*$")

_CLOSERS = {"{": "}", "[": "]"}


class ParseFailure(ValueError):
    """Raised when no structured value can be recovered from model output."""

    def __init__(self, text: str) -> None:
        self.preview = text[:PREVIEW_CHARS]
        super().__init__(f"Unable to parse JSON: {self.preview!r}")


def strip_reasoning(text: str) -> str:
    """Remove every <think>...</think> span."""
    return _REASONING_RE.sub("", text)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ``` fence, with or without a language tag."""
    stripped = text.strip()
    match = _FENCE_OPEN_RE.match(stripped)
    if not match:
        return stripped
    body = stripped[match.end():]
    close = body.rfind("```")
    if close != -1:
        body = body[:close]
    return body.strip()


def _slice_payload(text: str) -> str | None:
    """Return the text from the first opener to its balancing closer."""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    # never balanced: truncated output
    return text[start:]


def _has_open_string(text: str) -> bool:
    quotes = 0
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            quotes += 1
    return quotes % 2 == 1


def _missing_closers(text: str) -> str:
    stack: list[str] = []
    for ch in text:
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]" and stack:
            stack.pop()
    return "".join(reversed(stack))


def repair_truncated(text: str) -> str:
    """Close a dangling string and append the closers a truncated payload needs."""
    fixed = text.rstrip()
    if _has_open_string(fixed):
        fixed += '"'
    closers = _missing_closers(fixed)
    if closers:
        fixed = _TRAILING_COMMA_RE.sub("", fixed) + closers
    return fixed


def parse_partial_json(text: str) -> Any:
    """Recover a JSON value from raw model output.

    Raises ParseFailure (a ValueError) carrying a preview of the input when
    nothing parses.
    """
    cleaned = strip_code_fence(strip_reasoning(text))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    payload = _slice_payload(cleaned)
    if payload is None:
        raise ParseFailure(text)
    try:
        return json.loads(repair_truncated(payload))
    except json.JSONDecodeError as e:
        raise ParseFailure(text) from e
