"""vizql-harness: multi-round tool-calling orchestration over a VizQL tool service."""

from vizql_harness.core.engine import OrchestrationEngine
from vizql_harness.errors import (
    HarnessError,
    InvalidInputError,
    ModelGatewayError,
    OrchestrationError,
    ToolError,
)
from vizql_harness.events.bus import ProgressEmitter
from vizql_harness.types import EventType, ProgressEvent, ToolCall, ToolResult

__version__ = "0.1.0"

__all__ = [
    "EventType",
    "HarnessError",
    "InvalidInputError",
    "ModelGatewayError",
    "OrchestrationEngine",
    "OrchestrationError",
    "ProgressEmitter",
    "ProgressEvent",
    "ToolCall",
    "ToolError",
    "ToolResult",
]
