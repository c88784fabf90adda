"""Tests for tool definitions and the tool dispatcher."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from vizql_harness.errors import ToolError, invalid_params
from vizql_harness.mcp.client import ToolServiceClient
from vizql_harness.tools.definitions import TOOL_NAMES, tool_schemas
from vizql_harness.tools.dispatch import ToolDispatcher, normalize_query
from vizql_harness.types import ToolCall

LOCKED = "ds-locked-0001"


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock(spec=ToolServiceClient)


@pytest.fixture
def dispatcher(client: AsyncMock) -> ToolDispatcher:
    return ToolDispatcher(client)


def _query(luid: str = LOCKED, **query) -> ToolCall:
    query.setdefault("fields", [{"fieldCaption": "State"}, {"fieldCaption": "Sales", "function": "SUM"}])
    return ToolCall(id="toolu_q", name="query-datasource", input={"datasourceLuid": luid, "query": query})


class TestDefinitions:
    def test_names(self):
        assert set(TOOL_NAMES) == {
            "list-datasources", "get-datasource-metadata", "query-datasource",
            "get-workbook", "list-views",
        }

    def test_schema_shape(self):
        schema = {s["name"]: s for s in tool_schemas()}["query-datasource"]
        assert schema["input_schema"]["required"] == ["datasourceLuid", "query"]
        assert schema["input_schema"]["properties"]["query"]["required"] == ["fields"]

    def test_locked_hides_enumeration(self):
        names = [s["name"] for s in tool_schemas(locked=True)]
        assert "list-datasources" not in names
        assert len(names) == len(TOOL_NAMES) - 1

    def test_dispatcher_covers_every_definition(self, dispatcher):
        assert sorted(dispatcher.tool_names()) == sorted(TOOL_NAMES)


class TestNormalizeQuery:
    def test_drops_limit(self):
        assert "limit" not in normalize_query({"fields": [], "limit": 5})

    def test_aggregation_renamed(self):
        fields = normalize_query({"fields": [
            {"fieldCaption": "Sales", "aggregation": "SUM"},
            {"fieldCaption": "Profit", "aggregation": "AVG", "function": "MAX"},
        ]})["fields"]
        assert fields == [
            {"fieldCaption": "Sales", "function": "SUM"},
            {"fieldCaption": "Profit", "function": "MAX"},
        ]

    def test_date_filter_rewritten(self):
        flt = normalize_query({"fields": [], "filters": [{
            "field": {"fieldCaption": "Order Date"},
            "filterType": "QUANTITATIVE_DATE",
            "quantitativeFilterType": "RANGE",
            "min": "2024-01-01",
            "max": "2024-03-31",
        }]})["filters"][0]
        assert flt == {
            "field": {"fieldCaption": "Order Date"},
            "filterType": "DATE",
            "minDate": "2024-01-01",
            "maxDate": "2024-03-31",
            "dateRangeType": "RANGE",
        }

    def test_other_filters_untouched(self):
        flt = {"field": {"fieldCaption": "Sales"}, "filterType": "QUANTITATIVE_NUMERICAL", "min": 1}
        assert normalize_query({"filters": [flt]})["filters"] == [flt]

    def test_input_not_mutated(self):
        query = {"fields": [{"fieldCaption": "A", "aggregation": "SUM"}], "limit": 3}
        normalize_query(query)
        assert query["limit"] == 3
        assert query["fields"][0]["aggregation"] == "SUM"


class TestLock:
    async def test_other_datasource_rejected_locally(self, dispatcher, client):
        result = await dispatcher.dispatch(_query("ds-other"), LOCKED)

        assert result.is_error
        assert result.tool_use_id == "toolu_q"
        payload = json.loads(result.content)
        assert 'locked to "ds-locked-0001"' in payload["detail"]
        assert payload["recoverySuggestions"]
        client.query_datasource.assert_not_awaited()

    async def test_enumeration_rejected_when_locked(self, dispatcher, client):
        call = ToolCall(id="t", name="list-datasources", input={})
        result = await dispatcher.dispatch(call, LOCKED)
        assert result.is_error
        assert "is not available when a datasource is selected" in json.loads(result.content)["detail"]
        client.list_datasources.assert_not_awaited()

    async def test_unlocked_enumeration_allowed(self, dispatcher, client):
        client.list_datasources.return_value = [{"id": "a"}]
        result = await dispatcher.dispatch(ToolCall(id="t", name="list-datasources", input={"limit": "5"}))
        assert not result.is_error
        client.list_datasources.assert_awaited_once_with(filter=None, page_size=None, limit=5)

    def test_check_lock_ignores_unscoped_tools(self, dispatcher):
        dispatcher.check_lock(ToolCall(id="t", name="get-workbook", input={}), LOCKED)


class TestDispatch:
    async def test_query_is_normalized(self, dispatcher, client):
        client.query_datasource.return_value = {"data": []}
        await dispatcher.dispatch(_query(limit=10), LOCKED)
        luid, query = client.query_datasource.await_args.args
        assert luid == LOCKED
        assert "limit" not in query

    async def test_large_result_truncated(self, dispatcher, client):
        client.query_datasource.return_value = {
            "data": [{"State": f"S{i}", "Sales": i} for i in range(50_000)],
        }
        result = await dispatcher.dispatch(_query(), LOCKED)

        payload = json.loads(result.content)
        assert len(payload["data"]) == 1000
        assert payload["_metadata"]["totalRows"] == 50_000
        assert payload["_metadata"]["returnedRows"] == 1000
        assert payload["_metadata"]["truncated"] is True

    async def test_unknown_tool(self, dispatcher):
        result = await dispatcher.dispatch(ToolCall(id="t", name="drop-table", input={}))
        assert result.is_error
        assert json.loads(result.content)["detail"] == "Unknown tool: drop-table"

    async def test_missing_argument(self, dispatcher, client):
        result = await dispatcher.dispatch(ToolCall(id="t", name="get-workbook", input={}))
        assert result.is_error
        assert "workbookId is required" in json.loads(result.content)["detail"]
        client.get_workbook.assert_not_awaited()

    @pytest.mark.parametrize("value", ["ten", float("inf")])
    async def test_bad_number(self, dispatcher, client, value):
        result = await dispatcher.dispatch(ToolCall(id="t", name="list-views", input={"limit": value}))
        assert result.is_error
        client.list_views.assert_not_awaited()

    async def test_remote_failure_becomes_error_result(self, dispatcher, client):
        client.get_workbook.side_effect = ToolError("MCP request timeout", code=408)
        result = await dispatcher.dispatch(ToolCall(id="t", name="get-workbook", input={"workbookId": "wb"}))
        payload = json.loads(result.content)
        assert result.is_error
        assert payload["error"].startswith("The request took too long")
        assert payload["detail"] == "MCP request timeout"

    async def test_typo_suggestions_attached(self, dispatcher, client):
        client.query_datasource.side_effect = invalid_params("Unknown field: Saless")
        client.get_datasource_metadata.return_value = {"fields": [{"name": "Sales"}, {"name": "State"}]}

        result = await dispatcher.dispatch(_query(fields=[{"fieldCaption": "Saless"}]), LOCKED)

        suggestions = json.loads(result.content)["recoverySuggestions"]
        assert 'Field "Saless" not found. Did you mean: Sales?' in suggestions
        client.get_datasource_metadata.assert_awaited_once_with(LOCKED)

    async def test_typo_lookup_failure_tolerated(self, dispatcher, client):
        client.query_datasource.side_effect = invalid_params("Unknown field")
        client.get_datasource_metadata.side_effect = ToolError("down", code=503)
        result = await dispatcher.dispatch(_query(), LOCKED)
        assert result.is_error

    async def test_unexpected_exception_contained(self, dispatcher, client):
        client.list_views.side_effect = KeyError("views")
        result = await dispatcher.dispatch(ToolCall(id="t", name="list-views", input={}))
        payload = json.loads(result.content)
        assert result.is_error
        assert payload["error"].startswith("A tool failed unexpectedly")
