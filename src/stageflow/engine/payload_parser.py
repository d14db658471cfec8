"""Explicit multi-strategy JSON payload recovery from raw model text.

Work functions that talk to a text-completion resource can use
:func:`parse_payload` to turn a response into a payload. The outcome is a
tagged union: a genuine :class:`ParsedPayload`, a :class:`ParseError`, or,
only when the caller opts in, a :class:`PlaceholderPayload` that is never
mistaken for real data.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

PAYLOAD_PARSER_VERSION = "v1"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_PREVIEW_CHARS = 500


@dataclass(frozen=True, slots=True)
class ParsedPayload:
    """JSON value recovered by one of the parse strategies."""

    value: Any
    strategy: str


@dataclass(frozen=True, slots=True)
class PlaceholderPayload:
    """Degraded stand-in produced when no strategy succeeded."""

    raw_text: str
    reason: str
    strategy: str = "placeholder"


@dataclass(frozen=True, slots=True)
class ParseError:
    """No strategy could recover a JSON value."""

    message: str
    attempted: tuple[str, ...]
    preview: str


ParseOutcome = ParsedPayload | PlaceholderPayload | ParseError


def parse_payload(text: str, *, allow_placeholder: bool = False) -> ParseOutcome:
    """Run the ordered strategies and return the first successful parse."""

    sanitized = text.strip()
    attempted: list[str] = []
    for name, strategy in PARSE_STRATEGIES:
        attempted.append(name)
        value = strategy(sanitized)
        if value is not _NO_MATCH:
            return ParsedPayload(value=value, strategy=name)

    message = (
        "Failed to parse JSON from response. "
        f"Response length: {len(sanitized)} chars."
    )
    if allow_placeholder:
        return PlaceholderPayload(raw_text=sanitized, reason=message)
    return ParseError(
        message=message,
        attempted=tuple(attempted),
        preview=sanitized[:_PREVIEW_CHARS],
    )


def require_payload(text: str) -> Any:
    """Return the parsed value or raise ``ValueError`` so the attempt is retried."""

    outcome = parse_payload(text)
    if isinstance(outcome, ParsedPayload):
        return outcome.value
    if isinstance(outcome, ParseError):
        raise ValueError(f"{outcome.message} First chars: {outcome.preview[:120]!r}")
    raise ValueError(outcome.reason)


class _NoMatch:
    pass


_NO_MATCH: Any = _NoMatch()


def _direct(text: str) -> Any:
    return _try_load(text)


def _fenced_block(text: str) -> Any:
    match = _FENCED_JSON.search(text)
    if match is None:
        return _NO_MATCH
    return _try_load(match.group(1))


def _balanced_braces(text: str) -> Any:
    start = text.find("{")
    if start == -1:
        return _NO_MATCH
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return _try_load(text[start : index + 1])
    return _NO_MATCH


def _try_load(raw: str) -> Any:
    if not raw:
        return _NO_MATCH
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return _NO_MATCH


PARSE_STRATEGIES: tuple[tuple[str, Callable[[str], Any]], ...] = (
    ("direct", _direct),
    ("fenced_block", _fenced_block),
    ("balanced_braces", _balanced_braces),
)
