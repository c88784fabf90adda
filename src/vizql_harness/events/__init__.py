"""Progress events for vizql-harness."""

from vizql_harness.events.bus import ProgressEmitter
from vizql_harness.events.sse import SSEWriter, format_sse_event

__all__ = ["ProgressEmitter", "SSEWriter", "format_sse_event"]
