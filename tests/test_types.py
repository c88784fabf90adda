"""Tests for shared data types."""

import re

import pytest

from vizql_harness.types import EventType, ProgressEvent, ToolCall, ToolResult, utc_timestamp


class TestToolCall:
    def test_valid(self):
        tc = ToolCall(id=" toolu_1 ", name="query-datasource", input={"a": 1})
        assert tc.id == "toolu_1"
        assert tc.to_block() == {
            "type": "tool_use",
            "id": "toolu_1",
            "name": "query-datasource",
            "input": {"a": 1},
        }

    @pytest.mark.parametrize("kwargs", [
        {"id": "", "name": "x"},
        {"id": "1", "name": "  "},
        {"id": "1", "name": "x", "input": ["not", "an", "object"]},
    ])
    def test_rejects_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ToolCall(**kwargs)


class TestToolResult:
    def test_block_without_error_flag(self):
        block = ToolResult(tool_use_id="t1", content="{}").to_block()
        assert block == {"type": "tool_result", "tool_use_id": "t1", "content": "{}"}

    def test_block_with_error_flag(self):
        block = ToolResult(tool_use_id="t1", content="{}", is_error=True).to_block()
        assert block["is_error"] is True


class TestProgressEvent:
    def test_defaults(self):
        ev = ProgressEvent(type=EventType.ANSWER_CHUNK, data={"text": "hi"})
        assert ev.id is None
        assert ev.timestamp > 0

    def test_event_names(self):
        assert EventType.REASONING_STARTED.value == "reasoning_start"
        assert EventType.TOOL_CALL_COMPLETED.value == "tool_call_complete"
        assert EventType.ANSWER_COMPLETED.value == "answer_complete"


def test_utc_timestamp_format():
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", utc_timestamp())
