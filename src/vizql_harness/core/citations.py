"""Citations: which datasource, fields and filters an answer rests on."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from vizql_harness.tools.definitions import QUERY_DATASOURCE
from vizql_harness.types import ToolCall, ToolResult, utc_timestamp

_logger = logging.getLogger(__name__)


@dataclass
class Citation:
    """Provenance of one ``query-datasource`` call."""

    datasource_luid: str
    fields: list[dict[str, Any]]
    query_timestamp: str
    tool: str
    parameters: dict[str, Any]
    filters: list[dict[str, Any]] = field(default_factory=list)
    datasource_name: str | None = None
    workbook: dict[str, Any] | None = None
    view: dict[str, Any] | None = None
    result: Any = None

    def to_dict(self, include_result: bool = False) -> dict[str, Any]:
        datasource: dict[str, Any] = {"luid": self.datasource_luid}
        if self.datasource_name:
            datasource["name"] = self.datasource_name
        data: dict[str, Any] = {
            "datasource": datasource,
            "fields": self.fields,
            "queryTimestamp": self.query_timestamp,
            "tool": self.tool,
            "parameters": self.parameters,
        }
        if self.filters:
            data["filters"] = self.filters
        if self.workbook:
            data["workbook"] = self.workbook
        if self.view:
            data["view"] = self.view
        if include_result and self.result is not None:
            data["result"] = self.result
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Citation":
        """Rebuild a citation from its :meth:`to_dict` form."""
        datasource = data.get("datasource") or {}
        return cls(
            datasource_luid=datasource.get("luid", ""),
            datasource_name=datasource.get("name"),
            fields=list(data.get("fields") or []),
            filters=list(data.get("filters") or []),
            query_timestamp=data.get("queryTimestamp", ""),
            tool=data.get("tool", ""),
            parameters=dict(data.get("parameters") or {}),
            workbook=data.get("workbook"),
            view=data.get("view"),
            result=data.get("result"),
        )


def _citation_fields(query: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for spec in query.get("fields") or []:
        if not isinstance(spec, dict) or not isinstance(spec.get("fieldCaption"), str):
            continue
        entry: dict[str, Any] = {"name": spec["fieldCaption"]}
        if isinstance(spec.get("function"), str):
            entry["aggregation"] = spec["function"]
        if isinstance(spec.get("role"), str):
            entry["role"] = spec["role"]
        out.append(entry)
    return out


def _citation_filters(query: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for spec in query.get("filters") or []:
        if not isinstance(spec, dict):
            continue
        target = spec.get("field")
        name = target.get("fieldCaption") if isinstance(target, dict) else None
        if not isinstance(name, str):
            continue
        entry: dict[str, Any] = {"field": name}
        if isinstance(spec.get("filterType"), str):
            entry["type"] = spec["filterType"]
        entry.update({k: v for k, v in spec.items() if k not in ("field", "filterType")})
        out.append(entry)
    return out


def extract_citations(
    tool_calls: list[ToolCall],
    tool_results: list[ToolResult],
    *,
    datasource_name: str | None = None,
    workbook: dict[str, Any] | None = None,
    view: dict[str, Any] | None = None,
) -> list[Citation]:
    """One citation per ``query-datasource`` call with a usable luid and query."""
    timestamp = utc_timestamp()
    results = {r.tool_use_id: r for r in tool_results}
    citations: list[Citation] = []

    for call in tool_calls:
        if call.name != QUERY_DATASOURCE:
            continue
        luid = call.input.get("datasourceLuid")
        query = call.input.get("query")
        if not isinstance(luid, str) or not luid.strip() or not isinstance(query, dict):
            continue

        parsed: Any = None
        result = results.get(call.id)
        if result is not None and result.content:
            try:
                parsed = json.loads(result.content)
            except json.JSONDecodeError:
                parsed = result.content

        citations.append(Citation(
            datasource_luid=luid.strip(),
            datasource_name=datasource_name,
            fields=_citation_fields(query),
            filters=_citation_filters(query),
            query_timestamp=timestamp,
            tool=call.name,
            parameters=call.input,
            workbook=workbook,
            view=view,
            result=parsed,
        ))
    return citations


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------

def _format_field(entry: dict[str, Any]) -> str:
    if entry.get("aggregation"):
        return f"{entry['name']} ({entry['aggregation']})"
    return entry["name"]


def _format_filter(entry: dict[str, Any]) -> str:
    rest = {k: v for k, v in entry.items() if k not in ("field", "type")}
    kind = entry.get("type")
    if kind == "DATE" and rest.get("minDate") and rest.get("maxDate"):
        return f"{entry['field']} ({rest['minDate']} to {rest['maxDate']})"
    if kind == "SET" and isinstance(rest.get("values"), list):
        return f"{entry['field']} ({', '.join(map(str, rest['values']))})"
    details = ", ".join(f"{k}: {v}" for k, v in rest.items())
    return f"{entry['field']} ({kind or 'unknown'}{', ' + details if details else ''})"


def format_timestamp(timestamp: str) -> str:
    """``2024-01-15T10:30:00.000Z`` to ``Jan 15, 2024 10:30 AM``."""
    try:
        moment = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    hour = moment.hour % 12 or 12
    period = "AM" if moment.hour < 12 else "PM"
    return f"{moment:%b} {moment.day}, {moment.year} {hour}:{moment:%M} {period}"


def format_citation(citation: Citation) -> str:
    lines = ["📊 Source:", f"• Datasource: {citation.datasource_name or citation.datasource_luid}"]
    if citation.workbook:
        lines.append(f"• Workbook: {citation.workbook.get('name') or citation.workbook.get('id')}")
    if citation.view:
        lines.append(f"• View: {citation.view.get('name') or citation.view.get('id')}")
    lines.append(f"• Fields: {', '.join(_format_field(f) for f in citation.fields)}")
    if citation.filters:
        lines.append(f"• Filters: {', '.join(_format_filter(f) for f in citation.filters)}")
    lines.append(f"• Query Time: {format_timestamp(citation.query_timestamp)}")
    return "\n".join(lines)


def format_citations(citations: list[Citation]) -> str:
    return "\n\n".join(format_citation(c) for c in citations)


def format_citation_dicts(items: list[dict[str, Any]]) -> str:
    """Render citations as carried in an ``answer_complete`` event."""
    return format_citations([Citation.from_dict(item) for item in items if isinstance(item, dict)])
