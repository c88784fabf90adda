"""Tests for the context provider and its cache."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from vizql_harness.config import DefaultsSpec
from vizql_harness.core.context import ContextProvider, format_context
from vizql_harness.errors import InvalidInputError, ToolError
from vizql_harness.mcp.client import ToolServiceClient

LUID = "ds-0123456789abcdef"

METADATA = {"fields": [
    {"name": "State", "dataType": "STRING", "role": "DIMENSION"},
    {"name": "Sales", "dataType": "REAL", "role": "MEASURE"},
]}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def client() -> AsyncMock:
    c = AsyncMock(spec=ToolServiceClient)
    c.get_datasource_metadata.return_value = METADATA
    c.list_datasources.return_value = [{"id": LUID, "name": "Superstore"}]
    c.get_workbook.return_value = {"id": "wb-1", "name": "Sales Workbook"}
    c.list_views.return_value = [{"id": "v-1", "name": "Overview"}]
    return c


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider(client, clock) -> ContextProvider:
    return ContextProvider(client, clock=clock)


class TestFormatContext:
    def test_lines(self):
        text = format_context(METADATA, LUID, "Superstore",
                              {"id": "wb-1", "name": "Sales Workbook"}, {"id": "v-1", "name": "Overview"})
        lines = text.split("\n")
        assert lines[0] == "Current Context:"
        assert lines[1] == f"- Datasource: Superstore ({LUID})"
        assert "locked to the datasource above" in lines[2]
        assert "- Workbook: Sales Workbook (wb-1)" in lines
        assert "- View: Overview (v-1)" in lines
        assert "  - State (STRING, DIMENSION)" in lines
        assert "  - Sales (REAL, MEASURE)" in lines

    def test_no_fields(self):
        text = format_context({"fields": []}, LUID)
        assert "Unknown Datasource" in text
        assert text.endswith("  (No fields available)")


class TestContextProvider:
    async def test_builds_and_caches(self, provider, client):
        first = await provider.get(LUID)
        second = await provider.get(LUID)

        assert first == second
        assert f"- Datasource: Superstore ({LUID})" in first
        client.get_datasource_metadata.assert_awaited_once_with(LUID)
        client.list_datasources.assert_awaited_once_with(limit=100)

    async def test_resolve_snapshot(self, provider):
        snapshot = await provider.resolve(LUID, "wb-1", "v-1")
        assert snapshot.datasource_name == "Superstore"
        assert snapshot.workbook == {"id": "wb-1", "name": "Sales Workbook"}
        assert snapshot.view == {"id": "v-1", "name": "Overview"}

    async def test_selection_change_invalidates(self, provider, client):
        await provider.get(LUID, workbook_id="wb-1")
        await provider.get(LUID, workbook_id="wb-2")
        assert client.get_datasource_metadata.await_count == 2

    async def test_ttl_expiry(self, provider, client, clock):
        await provider.get(LUID)
        clock.now += 301
        await provider.get(LUID)
        assert client.get_datasource_metadata.await_count == 2

    async def test_oldest_evicted(self, client, clock):
        provider = ContextProvider(client, max_entries=2, clock=clock)
        for i in range(3):
            clock.now += 1
            await provider.get(f"ds-{i:012d}")
        assert len(provider) == 2
        await provider.get("ds-000000000000")
        assert client.get_datasource_metadata.await_count == 4

    async def test_invalidate(self, provider, client):
        await provider.get(LUID)
        provider.invalidate(LUID)
        await provider.get(LUID)
        provider.invalidate()
        assert len(provider) == 0
        assert client.get_datasource_metadata.await_count == 2

    async def test_name_lookup_falls_back_to_defaults(self, client, clock):
        client.list_datasources.side_effect = ToolError("down", code=503)
        client.get_workbook.side_effect = ToolError("down", code=503)
        defaults = DefaultsSpec(datasource_luid=LUID, datasource_name="Default DS",
                                workbook_id="wb-1", workbook_name="Default WB")
        provider = ContextProvider(client, defaults, clock=clock)

        snapshot = await provider.resolve(LUID, workbook_id="wb-1")
        assert snapshot.datasource_name == "Default DS"
        assert snapshot.workbook == {"id": "wb-1", "name": "Default WB"}

    async def test_test_luid_skips_lookup(self, provider, client):
        await provider.get("test-datasource-1")
        client.list_datasources.assert_not_awaited()

    async def test_metadata_failure_propagates(self, provider, client):
        client.get_datasource_metadata.side_effect = ToolError("down", code=503)
        with pytest.raises(ToolError):
            await provider.get(LUID)

    async def test_empty_luid(self, provider):
        with pytest.raises(InvalidInputError):
            await provider.get("  ")
