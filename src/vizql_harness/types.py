"""Shared data types for vizql-harness."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


# ---------------------------------------------------------------------------
# Transcript roles
# ---------------------------------------------------------------------------

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

ROLES = (ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM)


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    ``id`` is the join key between the model's ``tool_use`` block and the
    ``tool_result`` block sent back in the next transcript message.
    """

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("ToolCall.id must be a non-empty string")
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("ToolCall.name must be a non-empty string")
        if not isinstance(self.input, dict):
            raise ValueError("ToolCall.input must be an object")
        self.id = self.id.strip()
        self.name = self.name.strip()

    def to_block(self) -> dict[str, Any]:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": self.input,
        }


@dataclass
class ToolResult:
    """Serialized outcome of one tool call.

    ``content`` is always a JSON document, including on error, because the
    model consumes it as ordinary tool output.
    """

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_block(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


# ---------------------------------------------------------------------------
# Stream types
# ---------------------------------------------------------------------------

class FragmentType(enum.Enum):
    """Kinds of streamed fragments emitted by the model gateway."""

    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    PING = "ping"
    ERROR = "error"


class Phase(enum.Enum):
    """Progress phase detected from a fragment."""

    REASONING = "reasoning"
    TOOL_CALLS = "tool_calls"
    ANSWER = "answer"
    COMPLETE = "complete"


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Progress notifications pushed by the engine."""

    REASONING_STARTED = "reasoning_start"
    TOOL_CALL_STARTED = "tool_call_start"
    TOOL_CALL_COMPLETED = "tool_call_complete"
    ANSWER_STARTED = "answer_start"
    ANSWER_CHUNK = "answer_chunk"
    ANSWER_COMPLETED = "answer_complete"
    ERROR = "error"


@dataclass
class ProgressEvent:
    """Event delivered to progress subscribers.

    ``id`` correlates ``tool_call_start`` with ``tool_call_complete``.
    """

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    timestamp: float = field(default_factory=time.time)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
