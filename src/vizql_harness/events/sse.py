"""Server-Sent-Events rendering of progress events."""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Callable

from vizql_harness.types import ProgressEvent

_logger = logging.getLogger(__name__)

KEEP_ALIVE = ": keep-alive\n\n"

Writer = Callable[[str], Any]


def format_sse_event(event: ProgressEvent) -> str:
    """``id:`` (optional), ``event:`` and ``data:`` lines plus a blank line."""
    lines = []
    if event.id:
        lines.append(f"id: {event.id}")
    lines.append(f"event: {event.type.value}")
    lines.append(f"data: {json.dumps(event.data, default=str)}")
    return "\n".join(lines) + "\n\n"


class SSEWriter:
    """Subscriber that writes each progress event to an SSE stream.

    *write* receives text and may be sync or async (for example an
    ``asyncio.StreamWriter.write`` wrapper or a response ``send``).  A
    failing write marks the writer broken; later events are dropped.

    Usage::

        writer = SSEWriter(response.write)
        emitter.subscribe("*", writer)
    """

    def __init__(self, write: Writer) -> None:
        self._write = write
        self.sent = 0
        self.broken = False

    async def __call__(self, event: ProgressEvent) -> None:
        await self._send(format_sse_event(event))

    async def keep_alive(self) -> None:
        await self._send(KEEP_ALIVE)

    async def _send(self, text: str) -> None:
        if self.broken:
            return
        try:
            result = self._write(text)
            if inspect.isawaitable(result):
                await result
        except (OSError, RuntimeError) as e:
            self.broken = True
            _logger.warning("SSE write failed, dropping further events: %s", e)
            return
        self.sent += 1
