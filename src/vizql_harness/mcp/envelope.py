"""Response envelope normalization for the tool service.

The same logical response can arrive as plain JSON, as JSON wrapped in
Server-Sent-Events framing (whatever the declared content type), or as JSON
inside markdown fences or surrounded by prose.  Each strategy below is one
parse attempt returning :data:`MISS` when it does not apply; they are
composed in a fixed order by :func:`extract_json_from_text`.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

_logger = logging.getLogger(__name__)


class _Miss:
    """Sentinel for a parse attempt that did not apply."""

    _instance: "_Miss | None" = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()

ParseAttempt = Callable[[str], Any]

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def looks_like_sse(text: str) -> bool:
    """Content inspection: does *text* carry SSE framing?"""
    return "event:" in text or ("data:" in text and "\n" in text)


def sse_data_payload(text: str) -> str:
    """Join every ``data:`` line of *text* (``[DONE]`` excluded)."""
    parts: list[str] = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped.startswith("data:"):
            continue
        content = stripped[5:].strip()
        if content and content != "[DONE]":
            parts.append(content)
    return "\n".join(parts)


def parse_sse_events(text: str) -> list[Any]:
    """Split SSE text into events and JSON-decode each ``data`` payload.

    Events whose payload does not decode are skipped.  Multi-line ``data``
    fields within one event are joined with ``\\n``.
    """
    events: list[Any] = []
    current: list[str] = []

    def _flush() -> None:
        if not current:
            return
        payload = "\n".join(current)
        current.clear()
        try:
            events.append(json.loads(payload))
        except json.JSONDecodeError:
            _logger.debug("Skipping undecodable SSE payload: %.100s", payload)

    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped:
            _flush()
        elif stripped.startswith(":"):
            continue
        elif stripped.startswith("event:"):
            _flush()
        elif stripped.startswith("data:"):
            content = stripped[5:].strip()
            if content and content != "[DONE]":
                current.append(content)
    _flush()
    return events


# ---------------------------------------------------------------------------
# Parse attempts
# ---------------------------------------------------------------------------

def try_sse(text: str) -> Any:
    if not ("data:" in text and "\n" in text):
        return MISS
    payload = sse_data_payload(text)
    if not payload:
        return MISS
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        # Several events joined together do not form one document; take
        # the last event that decodes.
        events = parse_sse_events(text)
        return events[-1] if events else MISS


def try_fence(text: str) -> Any:
    """A fence wrapping the whole text, else the first fence inside prose."""
    for match in (_FENCE_RE.fullmatch(text), _FENCE_RE.search(text)):
        if match is None:
            continue
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
    return MISS


def try_direct(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return MISS


def find_balanced(text: str, start: int) -> str | None:
    """Return the balanced ``{...}`` or ``[...]`` beginning at *start*.

    Quoted strings and backslash escapes are respected so that braces
    inside string values do not affect depth.
    """
    if start >= len(text) or text[start] not in "{[":
        return None
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def try_brace_scan(text: str) -> Any:
    positions = [p for p in (text.find("{"), text.find("[")) if p != -1]
    if not positions:
        return MISS
    candidate = find_balanced(text, min(positions))
    if candidate is None:
        return MISS
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return MISS


# Text that already parses as JSON is returned as parsed.
_PIPELINE: tuple[ParseAttempt, ...] = (try_direct, try_sse, try_fence, try_brace_scan)


def extract_json_from_text(text: Any) -> Any:
    """Run the parse-attempt pipeline over *text*.

    Non-string input is returned unchanged.  When every attempt misses the
    original string is returned so callers can still surface it.
    """
    if not isinstance(text, str):
        return text
    stripped = text.strip()
    if not stripped:
        return text
    for attempt in _PIPELINE:
        result = attempt(stripped)
        if result is not MISS:
            return result
    return text


def decode_nested(text: Any) -> Any:
    """Extract JSON, then extract again if the value was double-encoded."""
    value = extract_json_from_text(text)
    if isinstance(value, str) and value != text:
        return extract_json_from_text(value)
    return value


# ---------------------------------------------------------------------------
# JSON-RPC envelope selection
# ---------------------------------------------------------------------------

def select_rpc_message(events: list[Any], request_id: int | None) -> dict[str, Any] | None:
    """Pick the JSON-RPC message answering *request_id* from SSE events.

    Falls back to the first object event when no id matches.
    """
    first: dict[str, Any] | None = None
    for event in events:
        if not isinstance(event, dict):
            continue
        if request_id is not None and event.get("id") == request_id:
            return event
        if first is None:
            first = event
    return first


def parse_rpc_body(
    text: str,
    content_type: str,
    request_id: int | None,
) -> dict[str, Any] | None:
    """Turn a raw HTTP body into a JSON-RPC message object.

    Returns *None* when nothing decodes to an object.
    """
    if "text/event-stream" in content_type or looks_like_sse(text):
        message = select_rpc_message(parse_sse_events(text), request_id)
        if message is not None:
            return message
        payload = sse_data_payload(text)
        if payload:
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return parsed

    extracted = extract_json_from_text(text)
    if isinstance(extracted, dict):
        return extracted
    return None
