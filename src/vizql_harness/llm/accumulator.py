"""Chunk accumulation: streamed fragments to answer text and tool calls.

Tool-use blocks are correlated by the fragment ``index``.  Only the
``content_block_start`` fragment names the tool id; the
``input_json_delta`` fragments that follow carry the index alone, so the
accumulator keeps an explicit ``index -> buffer`` table for the lifetime
of one pass.  A pass is destructive on its input, so callers that need
both tool discovery and answer text stream the turn twice.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Awaitable, Callable

from vizql_harness.types import FragmentType, Phase, ToolCall

_logger = logging.getLogger(__name__)

_TOOL_USE = "tool_use"
_TEXT = "text"
_TEXT_DELTA = "text_delta"
_INPUT_JSON_DELTA = "input_json_delta"


# ---------------------------------------------------------------------------
# Pure fragment helpers
# ---------------------------------------------------------------------------

def _kind(fragment: Any) -> str | None:
    if not isinstance(fragment, dict):
        return None
    kind = fragment.get("type")
    return kind if isinstance(kind, str) else None


def _sub(fragment: dict[str, Any], key: str) -> dict[str, Any]:
    value = fragment.get(key)
    return value if isinstance(value, dict) else {}


def detect_phase(fragment: Any) -> Phase | None:
    """Map a fragment to the phase it signals, or *None* if it signals none."""
    kind = _kind(fragment)
    if kind == FragmentType.MESSAGE_START.value:
        return Phase.REASONING
    if kind == FragmentType.CONTENT_BLOCK_START.value:
        block_type = _sub(fragment, "content_block").get("type")
        if block_type == _TOOL_USE:
            return Phase.TOOL_CALLS
        if block_type == _TEXT:
            return Phase.ANSWER
        return None
    if kind == FragmentType.CONTENT_BLOCK_DELTA.value:
        if _sub(fragment, "delta").get("type") == _TEXT_DELTA:
            return Phase.ANSWER
        return None
    if kind == FragmentType.MESSAGE_STOP.value:
        return Phase.COMPLETE
    return None


def extract_answer_text(fragment: Any) -> str:
    """Answer text carried by *fragment* (empty string if none)."""
    kind = _kind(fragment)
    if kind == FragmentType.CONTENT_BLOCK_DELTA.value:
        delta = _sub(fragment, "delta")
        if delta.get("type") == _TEXT_DELTA:
            text = delta.get("text")
            return text if isinstance(text, str) else ""
    elif kind == FragmentType.CONTENT_BLOCK_START.value:
        block = _sub(fragment, "content_block")
        if block.get("type") == _TEXT:
            text = block.get("text")
            return text if isinstance(text, str) else ""
    return ""


# ---------------------------------------------------------------------------
# ChunkAccumulator
# ---------------------------------------------------------------------------

@dataclass
class _BlockBuffer:
    id: str
    name: str
    input: dict[str, Any]
    raw: list[str] = field(default_factory=list)

    def settle(self) -> ToolCall:
        """Merge accumulated delta JSON over the block-start input."""
        merged = dict(self.input)
        raw = "".join(self.raw)
        if raw.strip():
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as e:
                _logger.warning(
                    "Failed to parse accumulated input for tool %s (%s): %s",
                    self.name, self.id, e,
                )
            else:
                if isinstance(parsed, dict):
                    merged.update(parsed)
                else:
                    _logger.warning(
                        "Accumulated input for tool %s is not an object; keeping start input",
                        self.name,
                    )
        return ToolCall(id=self.id, name=self.name, input=merged)


@dataclass
class AccumulatorUpdate:
    """What one fragment contributed."""

    text: str = ""
    phase: Phase | None = None
    phase_changed: bool = False
    tool_call: ToolCall | None = None
    done: bool = False


class ChunkAccumulator:
    """Reduce a fragment sequence into answer text and tool calls.

    Usage::

        acc = ChunkAccumulator()
        async for fragment in stream:
            update = acc.feed(fragment)
        tool_calls = acc.finish()
    """

    def __init__(self) -> None:
        self._buffers: dict[int | str, _BlockBuffer] = {}
        self._tool_calls: list[ToolCall] = []
        self._text: list[str] = []
        self._phase: Phase | None = None
        self._done = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase | None:
        return self._phase

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return list(self._tool_calls)

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, fragment: Any) -> AccumulatorUpdate:
        update = AccumulatorUpdate()
        kind = _kind(fragment)
        if kind is None:
            return update

        phase = detect_phase(fragment)
        if phase is not None:
            update.phase = phase
            update.phase_changed = self._phase is not None and phase != self._phase
            self._phase = phase

        text = extract_answer_text(fragment)
        if text:
            self._text.append(text)
            update.text = text

        if kind == FragmentType.CONTENT_BLOCK_START.value:
            self._open_block(fragment)
        elif kind == FragmentType.CONTENT_BLOCK_DELTA.value:
            self._append_delta(fragment)
        elif kind == FragmentType.CONTENT_BLOCK_STOP.value:
            update.tool_call = self._close_block(fragment)
        elif kind == FragmentType.MESSAGE_STOP.value:
            self._done = True
            update.done = True

        return update

    def finish(self) -> list[ToolCall]:
        """Close any buffers left open by a truncated stream.

        Returns every tool call of the pass, completed ones first.
        """
        for key in list(self._buffers):
            buffer = self._buffers.pop(key)
            _logger.warning(
                "Stream ended inside tool block %s (%s); surfacing partial call",
                buffer.name, buffer.id,
            )
            self._tool_calls.append(buffer.settle())
        return list(self._tool_calls)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_block(self, fragment: dict[str, Any]) -> None:
        block = _sub(fragment, "content_block")
        if block.get("type") != _TOOL_USE:
            return
        tool_id = block.get("id") or block.get("tool_use_id")
        name = block.get("name")
        if not isinstance(tool_id, str) or not tool_id.strip() or not isinstance(name, str) or not name.strip():
            _logger.warning("Ignoring tool_use block without id or name: %r", block)
            return
        start_input = block.get("input")
        if not isinstance(start_input, dict):
            start_input = {}
        key = self._key(fragment.get("index"), tool_id)
        self._buffers[key] = _BlockBuffer(id=tool_id.strip(), name=name.strip(), input=start_input)

    def _append_delta(self, fragment: dict[str, Any]) -> None:
        delta = _sub(fragment, "delta")
        if delta.get("type") != _INPUT_JSON_DELTA:
            return
        partial = delta.get("partial_json")
        if not isinstance(partial, str) or not partial:
            return
        index = fragment.get("index")
        buffer = self._buffers.get(index) if isinstance(index, int) else None
        if buffer is None:
            _logger.debug("Dropping input_json_delta for unknown index %r", index)
            return
        buffer.raw.append(partial)

    def _close_block(self, fragment: dict[str, Any]) -> ToolCall | None:
        index = fragment.get("index")
        key: int | str | None = index if isinstance(index, int) else None
        if key is None or key not in self._buffers:
            block = _sub(fragment, "content_block")
            tool_id = block.get("id") or block.get("tool_use_id")
            key = self._key(None, tool_id) if isinstance(tool_id, str) else None
        if key is None or key not in self._buffers:
            return None
        tool_call = self._buffers.pop(key).settle()
        self._tool_calls.append(tool_call)
        return tool_call

    @staticmethod
    def _key(index: Any, tool_id: str) -> int | str:
        if isinstance(index, int) and not isinstance(index, bool):
            return index
        return f"id:{tool_id.strip()}"


# ---------------------------------------------------------------------------
# Pass helpers
# ---------------------------------------------------------------------------

async def collect_tool_calls(fragments: AsyncIterable[dict[str, Any]]) -> list[ToolCall]:
    """Drain *fragments* and return every tool call they describe."""
    acc = ChunkAccumulator()
    async for fragment in fragments:
        acc.feed(fragment)
    return acc.finish()


ChunkCallback = Callable[[str], Awaitable[None]]


async def relay_answer(
    fragments: AsyncIterable[dict[str, Any]],
    on_chunk: ChunkCallback | None = None,
) -> str:
    """Drain *fragments*, forwarding each answer text piece to *on_chunk*.

    Returns the concatenation of exactly the pieces forwarded.
    """
    acc = ChunkAccumulator()
    async for fragment in fragments:
        update = acc.feed(fragment)
        if update.text and on_chunk is not None:
            await on_chunk(update.text)
    return acc.text
