"""Transcript message builders and tool-result formatting."""

from __future__ import annotations

import json
import logging
from typing import Any

from vizql_harness.types import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, ToolCall, ToolResult

_logger = logging.getLogger(__name__)

MAX_QUERY_ROWS = 1000
MAX_RESULT_BYTES = 100_000
SUMMARY_KEYS = 5


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

def system_message(content: str) -> dict[str, Any]:
    return {"role": ROLE_SYSTEM, "content": content}


def user_message(content: str) -> dict[str, Any]:
    if not isinstance(content, str) or not content.strip():
        raise ValueError("User message content must be a non-empty string")
    return {"role": ROLE_USER, "content": content.strip()}


def assistant_message(content: str) -> dict[str, Any]:
    return {"role": ROLE_ASSISTANT, "content": content}


def tool_use_message(tool_calls: list[ToolCall]) -> dict[str, Any]:
    """Assistant message carrying one round's ``tool_use`` blocks."""
    if not tool_calls:
        raise ValueError("Tool calls must be a non-empty list")
    return {"role": ROLE_ASSISTANT, "content": [tc.to_block() for tc in tool_calls]}


def tool_result_message(results: list[ToolResult]) -> dict[str, Any]:
    """User message carrying one round's ``tool_result`` blocks."""
    if not results:
        raise ValueError("Tool results must be a non-empty list")
    return {"role": ROLE_USER, "content": [r.to_block() for r in results]}


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------

def truncate_rows(result: Any, max_rows: int = MAX_QUERY_ROWS) -> Any:
    """Cap ``{"data": [...]}`` results at *max_rows*, noting the cut in ``_metadata``."""
    if not isinstance(result, dict) or not isinstance(result.get("data"), list):
        return result
    total = len(result["data"])
    if total <= max_rows:
        return result
    truncated = dict(result)
    truncated["data"] = result["data"][:max_rows]
    truncated["_metadata"] = {
        "totalRows": total,
        "returnedRows": max_rows,
        "truncated": True,
        "note": f"Result truncated: showing first {max_rows} of {total} rows",
    }
    return truncated


def truncate_content(content: str, max_bytes: int = MAX_RESULT_BYTES) -> str:
    """Bound serialized *content* to *max_bytes* of UTF-8.

    The cut backs up to the last ``}`` or ``]`` when one lies in the final
    fifth of the budget.  A cut that still parses is returned with a
    ``_truncated`` marker; otherwise a small wrapper object describes the
    truncation.  The result is always valid JSON.
    """
    encoded = content.encode("utf-8")
    size = len(encoded)
    if size <= max_bytes:
        return content

    cut = encoded[:max_bytes].decode("utf-8", errors="ignore")
    boundary = max(cut.rfind("}"), cut.rfind("]"))
    if boundary > max_bytes * 0.8:
        cut = cut[: boundary + 1]

    try:
        parsed = json.loads(cut)
    except json.JSONDecodeError:
        parsed = None
    else:
        if isinstance(parsed, dict):
            parsed["_truncated"] = True
            marked = json.dumps(parsed)
            if len(marked.encode("utf-8")) <= max_bytes:
                _logger.info("Tool result truncated from %d bytes at a structural boundary", size)
                return marked

    _logger.info("Tool result of %d bytes replaced by truncation wrapper", size)
    return json.dumps({
        "_truncated": True,
        "_note": "Result was too large and had to be truncated",
        "_originalSizeBytes": size,
        "_truncatedSizeBytes": len(cut.encode("utf-8")),
    })


def format_tool_result(
    tool_use_id: str,
    result: Any,
    is_error: bool = False,
    max_rows: int = MAX_QUERY_ROWS,
    max_bytes: int = MAX_RESULT_BYTES,
) -> ToolResult:
    """Serialize *result* into a bounded, always-valid JSON ``ToolResult``."""
    if not isinstance(tool_use_id, str) or not tool_use_id.strip():
        raise ValueError("Tool use ID must be a non-empty string")
    capped = truncate_rows(result, max_rows)
    try:
        content = json.dumps(capped)
    except (TypeError, ValueError) as e:
        _logger.warning("Failed to serialize tool result, using str() fallback: %s", e)
        content = json.dumps({"error": str(result)})
    return ToolResult(
        tool_use_id=tool_use_id.strip(),
        content=truncate_content(content, max_bytes),
        is_error=is_error,
    )


def summarize_result(result: ToolResult) -> dict[str, Any]:
    """Bounded summary for a ``tool_call_complete`` event."""
    success = not result.is_error
    try:
        parsed = json.loads(result.content)
    except json.JSONDecodeError:
        return {"success": success, "hasContent": bool(result.content)}

    if isinstance(parsed, dict):
        return {
            "success": success,
            "keys": list(parsed)[:SUMMARY_KEYS],
            "hasData": bool(parsed.get("data")) if "data" in parsed else bool(parsed),
        }
    if isinstance(parsed, list):
        return {
            "success": success,
            "keys": [str(i) for i in range(min(len(parsed), SUMMARY_KEYS))],
            "hasData": bool(parsed),
        }
    return {"success": success, "type": type(parsed).__name__}
