"""Tool schemas advertised to the model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

LIST_DATASOURCES = "list-datasources"
GET_DATASOURCE_METADATA = "get-datasource-metadata"
QUERY_DATASOURCE = "query-datasource"
GET_WORKBOOK = "get-workbook"
LIST_VIEWS = "list-views"

# Tools that name a datasource and are therefore subject to the lock.
DATASOURCE_SCOPED = frozenset({GET_DATASOURCE_METADATA, QUERY_DATASOURCE})
# Tools unavailable while a run is locked to one datasource.
ENUMERATE_ALL = frozenset({LIST_DATASOURCES})


@dataclass(frozen=True)
class ToolDefinition:
    """One tool in Anthropic ``tools`` format."""

    name: str
    description: str
    properties: dict[str, Any] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def to_schema(self) -> dict[str, Any]:
        input_schema: dict[str, Any] = {"type": "object", "properties": self.properties}
        if self.required:
            input_schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": input_schema,
        }


def _list_properties(noun: str, example: str) -> dict[str, Any]:
    return {
        "filter": {
            "type": "string",
            "description": f'Optional filter expression to filter {noun} (e.g., "{example}")',
        },
        "pageSize": {
            "type": "number",
            "description": f"Optional number of {noun} per page",
        },
        "limit": {
            "type": "number",
            "description": f"Optional maximum number of {noun} to return",
        },
    }


_FIELD_SPEC = {
    "type": "object",
    "properties": {
        "fieldCaption": {"type": "string", "description": "Field caption/name (required)"},
        "function": {
            "type": "string",
            "description": (
                "Optional aggregation function (SUM, COUNT, AVG, MEDIAN, MIN, MAX, "
                "COUNTD, STDEV, VAR, etc.)"
            ),
        },
        "fieldAlias": {"type": "string", "description": "Optional field alias for output"},
        "sortDirection": {
            "type": "string",
            "enum": ["ASC", "DESC"],
            "description": "Optional sort direction",
        },
        "sortPriority": {
            "type": "number",
            "description": "Optional sort priority (1 = highest priority)",
        },
    },
    "required": ["fieldCaption"],
}

_FILTER_SPEC = {
    "type": "object",
    "properties": {
        "field": {
            "type": "object",
            "description": "Field to filter on",
            "properties": {
                "fieldCaption": {"type": "string", "description": "Field caption/name (required)"},
                "function": {
                    "type": "string",
                    "description": "Optional aggregation function for the field",
                },
            },
            "required": ["fieldCaption"],
        },
        "filterType": {
            "type": "string",
            "description": (
                "Filter type (SET, TOP, MATCH, QUANTITATIVE_NUMERICAL, "
                "QUANTITATIVE_DATE, DATE, etc.)"
            ),
        },
    },
    "required": ["field", "filterType"],
}


TOOL_DEFINITIONS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name=LIST_DATASOURCES,
        description=(
            "List available Tableau datasources. Use this to enumerate datasources "
            "or find a datasource by name or filter."
        ),
        properties=_list_properties("datasources", "name:eq:My Datasource"),
    ),
    ToolDefinition(
        name=GET_DATASOURCE_METADATA,
        description=(
            "Get metadata for a datasource including field names, types, roles, and "
            "aggregations. Use this to validate field names before querying or to "
            "understand datasource structure."
        ),
        properties={
            "datasourceLuid": {
                "type": "string",
                "description": (
                    "The LUID (Locally Unique Identifier) of the datasource to get metadata for"
                ),
            },
        },
        required=("datasourceLuid",),
    ),
    ToolDefinition(
        name=QUERY_DATASOURCE,
        description=(
            "Execute a VizQL query against a Tableau datasource. This is the primary "
            "tool for answering user questions by querying data. The query includes "
            "fields (with aggregations), filters, and sorting. Do not include \"limit\" "
            "in the query object."
        ),
        properties={
            "datasourceLuid": {
                "type": "string",
                "description": "The LUID (Locally Unique Identifier) of the datasource to query",
            },
            "query": {
                "type": "object",
                "description": "VizQL query object specifying fields, filters, sorting, and limits",
                "properties": {
                    "fields": {
                        "type": "array",
                        "description": (
                            "Array of field specifications (required). Each field specifies "
                            "the field name, aggregation function, alias, and optional sorting."
                        ),
                        "items": _FIELD_SPEC,
                    },
                    "filters": {
                        "type": "array",
                        "description": "Optional array of filter specifications to filter query results",
                        "items": _FILTER_SPEC,
                    },
                    "sort": {
                        "description": "Optional sort specifications (object or array)",
                    },
                },
                "required": ["fields"],
            },
        },
        required=("datasourceLuid", "query"),
    ),
    ToolDefinition(
        name=GET_WORKBOOK,
        description=(
            "Get workbook metadata including name, ID, project information, and views. "
            "Use this for lineage display to show the relationship between datasource, "
            "workbook, and view."
        ),
        properties={
            "workbookId": {
                "type": "string",
                "description": "The ID of the workbook to get metadata for",
            },
        },
        required=("workbookId",),
    ),
    ToolDefinition(
        name=LIST_VIEWS,
        description=(
            "List views from Tableau. Use this to enumerate views or find views by "
            "workbook ID, view ID, or name. Useful for lineage display."
        ),
        properties=_list_properties("views", "workbookName:eq:My Workbook"),
    ),
)

TOOL_NAMES = tuple(d.name for d in TOOL_DEFINITIONS)


def tool_schemas(locked: bool = False) -> list[dict[str, Any]]:
    """Schemas for the model request; enumerate-all tools are hidden when *locked*."""
    return [
        d.to_schema() for d in TOOL_DEFINITIONS
        if not (locked and d.name in ENUMERATE_ALL)
    ]
