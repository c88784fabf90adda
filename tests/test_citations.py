"""Tests for citation extraction and rendering."""

from __future__ import annotations

import json

from vizql_harness.core.citations import (
    Citation,
    extract_citations,
    format_citation,
    format_citation_dicts,
    format_timestamp,
)
from vizql_harness.types import ToolCall, ToolResult

QUERY_INPUT = {
    "datasourceLuid": "ds-1",
    "query": {
        "fields": [
            {"fieldCaption": "State"},
            {"fieldCaption": "Sales", "function": "SUM", "sortDirection": "DESC"},
        ],
        "filters": [
            {"field": {"fieldCaption": "Order Date"}, "filterType": "DATE",
             "minDate": "2024-01-01", "maxDate": "2024-12-31"},
            {"field": {"fieldCaption": "Region"}, "filterType": "SET", "values": ["West", "East"]},
        ],
    },
}


def _calls():
    return [
        ToolCall(id="m", name="get-datasource-metadata", input={"datasourceLuid": "ds-1"}),
        ToolCall(id="q", name="query-datasource", input=QUERY_INPUT),
        ToolCall(id="bad", name="query-datasource", input={"query": {"fields": []}}),
    ]


class TestExtract:
    def test_one_per_query_call(self):
        results = [ToolResult("q", json.dumps({"data": [{"State": "CA", "Sales": 10}]}))]
        citations = extract_citations(_calls(), results, datasource_name="Superstore")

        assert len(citations) == 1
        c = citations[0]
        assert c.datasource_luid == "ds-1"
        assert c.fields == [{"name": "State"}, {"name": "Sales", "aggregation": "SUM"}]
        assert c.filters[0] == {
            "field": "Order Date", "type": "DATE", "minDate": "2024-01-01", "maxDate": "2024-12-31",
        }
        assert c.result == {"data": [{"State": "CA", "Sales": 10}]}

    def test_to_dict_omits_result(self):
        results = [ToolResult("q", '{"data": []}')]
        citation = extract_citations(_calls(), results, workbook={"id": "wb", "name": "Sales WB"})[0]
        data = citation.to_dict()

        assert data["datasource"] == {"luid": "ds-1"}
        assert data["tool"] == "query-datasource"
        assert data["parameters"] == QUERY_INPUT
        assert data["workbook"] == {"id": "wb", "name": "Sales WB"}
        assert "result" not in data
        assert citation.to_dict(include_result=True)["result"] == {"data": []}

    def test_round_trip_through_event_form(self):
        citation = extract_citations(_calls(), [])[0]
        assert Citation.from_dict(citation.to_dict()).to_dict() == citation.to_dict()


class TestRendering:
    def test_timestamp(self):
        assert format_timestamp("2024-01-15T10:30:00.000Z") == "Jan 15, 2024 10:30 AM"
        assert format_timestamp("2024-01-15T00:05:00.000Z") == "Jan 15, 2024 12:05 AM"
        assert format_timestamp("2024-07-04T15:00:00.000Z") == "Jul 4, 2024 3:00 PM"
        assert format_timestamp("not a date") == "not a date"

    def test_citation_text(self):
        citation = extract_citations(_calls(), [], datasource_name="Superstore",
                                     view={"id": "v1", "name": "Overview"})[0]
        citation.query_timestamp = "2024-01-15T10:30:00.000Z"
        assert format_citation(citation) == "\n".join([
            "📊 Source:",
            "• Datasource: Superstore",
            "• View: Overview",
            "• Fields: State, Sales (SUM)",
            "• Filters: Order Date (2024-01-01 to 2024-12-31), Region (West, East)",
            "• Query Time: Jan 15, 2024 10:30 AM",
        ])

    def test_from_event_dicts(self):
        dicts = [c.to_dict() for c in extract_citations(_calls(), [])]
        assert format_citation_dicts(dicts).startswith("📊 Source:\n• Datasource: ds-1")
