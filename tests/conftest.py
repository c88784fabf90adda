"""Shared fixtures for vizql-harness tests."""

from __future__ import annotations

import pytest

from vizql_harness.config import RetrySpec, ToolServiceSpec
from vizql_harness.events.bus import ProgressEmitter
from vizql_harness.types import ProgressEvent


@pytest.fixture
def tool_spec() -> ToolServiceSpec:
    return ToolServiceSpec(
        url="http://mcp.test/mcp",
        auth_token="secret-token",
        timeout=5.0,
        retry=RetrySpec(max_retries=3, initial_delay=1.0, max_delay=10.0, multiplier=2.0),
    )


@pytest.fixture
def emitter() -> ProgressEmitter:
    return ProgressEmitter()


@pytest.fixture
def recorded(emitter: ProgressEmitter) -> list[ProgressEvent]:
    """Every event delivered through ``emitter``, in order."""
    events: list[ProgressEvent] = []
    emitter.subscribe("*", events.append)
    return events
