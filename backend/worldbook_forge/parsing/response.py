"""Repair and parse degraded model output.

Model responses are supposed to be a single JSON object but routinely arrive
wrapped in commentary or code fences, or with unescaped quotes inside
generated prose. :func:`parse_response` runs a cascade of strategies ordered
from cheapest and most faithful to most permissive; later strategies can
produce wrong-but-parseable structures, so they only run when every earlier
one has failed.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Mapping, Sequence

import orjson

from worldbook_forge.core.errors import ParseError
from worldbook_forge.core.logging import get_logger
from worldbook_forge.core.metrics import PARSE_FAILURES, PARSE_STRATEGY
from worldbook_forge.utils.text import truncate

logger = get_logger(__name__)

RAW_PREVIEW_CHARS = 500

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_STRUCTURAL_AFTER_STRING = frozenset(":,}]")

TOKEN_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"prompt is too long",
        r"tokens?\s*>\s*\d+\s*maximum",
        r"max_prompt_tokens",
        r"tokens?.*exceeded",
        r"context.?length.*exceeded",
        r"exceeded.*(?:token|limit|context|maximum)",
        r"input tokens",
        r"context_length",
        r"too many tokens",
        r"token limit",
        r"maximum.*tokens",
        r"20015.*limit",
        r"INVALID_ARGUMENT",
    )
)


def parse_response(response: str) -> Any:
    """Return the JSON value embedded in ``response`` or raise :class:`ParseError`.

    Integer literals beyond the 64-bit range come back as floats and lose
    precision; everything else round-trips exactly.
    """
    if not isinstance(response, str) or not response.strip():
        PARSE_FAILURES.inc()
        raise ParseError("empty or non-text response", raw="" if response is None else str(response)[:RAW_PREVIEW_CHARS])

    text = response.strip()
    stripped = strip_code_fences(text)
    strategies: Sequence[tuple[str, Callable[[], str | None]]] = (
        ("direct", lambda: text),
        ("fences", lambda: stripped),
        ("outer_braces", lambda: extract_outer_object(stripped)),
        ("quote_repair", lambda: repair_unescaped_quotes(stripped)),
        ("longest_object", lambda: extract_longest_object(stripped)),
    )
    last_error: Exception | None = None
    for name, candidate_fn in strategies:
        candidate = candidate_fn()
        if not candidate:
            continue
        try:
            parsed = orjson.loads(candidate)
        except ValueError as exc:
            last_error = exc
            continue
        if name != "direct":
            logger.debug("Parsed model response with %s strategy", name, extra={"ctx_strategy": name})
        PARSE_STRATEGY.labels(strategy=name).inc()
        return parsed

    PARSE_FAILURES.inc()
    preview = truncate(response, RAW_PREVIEW_CHARS)
    raise ParseError(f"could not parse model response: {last_error}", raw=preview)


def strip_code_fences(text: str) -> str:
    """Remove every ```json / ``` marker."""
    return _FENCE_RE.sub("", text).strip()


def extract_outer_object(text: str) -> str | None:
    """Substring from the first ``{`` to the last ``}``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or start >= end:
        return None
    return text[start : end + 1]


def repair_unescaped_quotes(text: str) -> str:
    """Escape quotes that sit inside a string value.

    Outside a string every unescaped quote opens one. Inside a string a quote
    only closes it when the next non-blank character is structural (``:``
    after a key, or ``,`` ``}`` ``]`` after a value) or the text ends there;
    any other quote is prose and gets escaped.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    length = len(text)
    for idx, char in enumerate(text):
        if escaped:
            out.append(char)
            escaped = False
            continue
        if char == "\\":
            out.append(char)
            escaped = True
            continue
        if char != '"':
            out.append(char)
            continue
        if not in_string:
            in_string = True
            out.append(char)
            continue
        follower = _next_non_space(text, idx + 1, length)
        if follower is None or follower in _STRUCTURAL_AFTER_STRING:
            in_string = False
            out.append(char)
        else:
            out.append('\\"')
    return "".join(out)


def extract_longest_object(text: str) -> str | None:
    """Longest balanced ``{...}`` span anywhere in ``text``, string-aware."""
    spans = list(_balanced_spans(text))
    if not spans:
        return None
    start, end = max(spans, key=lambda span: span[1] - span[0])
    return text[start:end]


def _balanced_spans(text: str) -> Iterable[tuple[int, int]]:
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for idx, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = depth > 0
        elif char == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, idx + 1


def _next_non_space(text: str, start: int, length: int) -> str | None:
    for idx in range(start, length):
        if not text[idx].isspace():
            return text[idx]
    return None


def filter_response_tags(text: str, filter_tags: str | Sequence[str] = "thinking,/think") -> str:
    """Strip inline tags from a response.

    ``name`` removes every ``<name>...</name>`` block plus stray ``<name>``
    or ``<name/>`` markers. ``/name`` removes everything from the start of
    the text up to and including the first ``</name>``, which drops a
    reasoning preamble that has no opening tag.
    """
    if not text:
        return text
    if isinstance(filter_tags, str):
        tags = [tag.strip() for tag in filter_tags.split(",")]
    else:
        tags = [tag.strip() for tag in filter_tags]
    cleaned = text
    for tag in filter(None, tags):
        if tag.startswith("/"):
            name = re.escape(tag[1:])
            cleaned = re.sub(rf"^[\s\S]*?</{name}>", "", cleaned, count=1, flags=re.IGNORECASE)
        else:
            name = re.escape(tag)
            cleaned = re.sub(rf"<{name}>[\s\S]*?</{name}>", "", cleaned, flags=re.IGNORECASE)
            cleaned = re.sub(rf"<{name}\s*/?>", "", cleaned, flags=re.IGNORECASE)
    return cleaned.strip()


def is_token_limit_error(message: str | BaseException | None) -> bool:
    """True when a provider error message reports a context-length overflow."""
    if not message:
        return False
    check = str(message)[:RAW_PREVIEW_CHARS]
    return any(pattern.search(check) for pattern in TOKEN_LIMIT_PATTERNS)


def extract_worldbook_data(parsed: Any, enabled_categories: Iterable[str] | None = None) -> dict[str, dict[str, Any]]:
    """Keep object-valued categories, optionally restricted to ``enabled_categories``."""
    if not isinstance(parsed, Mapping):
        return {}
    allowed = set(enabled_categories) if enabled_categories is not None else None
    result: dict[str, dict[str, Any]] = {}
    for category, entries in parsed.items():
        if allowed is not None and category not in allowed:
            continue
        if isinstance(entries, Mapping):
            result[category] = dict(entries)
    return result


__all__ = [
    "TOKEN_LIMIT_PATTERNS",
    "parse_response",
    "strip_code_fences",
    "extract_outer_object",
    "repair_unescaped_quotes",
    "extract_longest_object",
    "filter_response_tags",
    "is_token_limit_error",
    "extract_worldbook_data",
]
