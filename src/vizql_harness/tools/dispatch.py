"""Route model tool calls to the tool service client.

Expected failures never escape :meth:`ToolDispatcher.dispatch`: they come
back as error ``ToolResult`` objects so the model can correct itself on
the next round.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Callable

from vizql_harness.core.error_mapping import (
    UserFacingError,
    log_error,
    map_error,
    unexpected_tool_failure,
)
from vizql_harness.core.fields import typo_suggestions
from vizql_harness.core.formatting import MAX_QUERY_ROWS, MAX_RESULT_BYTES, format_tool_result
from vizql_harness.errors import HarnessError, ToolError, invalid_params
from vizql_harness.mcp.client import ToolServiceClient
from vizql_harness.types import ToolCall, ToolResult

from .definitions import (
    DATASOURCE_SCOPED,
    ENUMERATE_ALL,
    GET_DATASOURCE_METADATA,
    GET_WORKBOOK,
    LIST_DATASOURCES,
    LIST_VIEWS,
    QUERY_DATASOURCE,
)

_logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Query normalization
# ---------------------------------------------------------------------------

def _normalize_field(spec: Any) -> Any:
    if not isinstance(spec, dict):
        return spec
    field = dict(spec)
    if "aggregation" in field:
        aggregation = field.pop("aggregation")
        field.setdefault("function", aggregation)
    return field


def _normalize_filter(spec: Any) -> Any:
    if not isinstance(spec, dict):
        return spec
    flt = dict(spec)
    filter_type = flt.get("filterType")
    has_bounds = "min" in flt or "max" in flt
    if filter_type not in ("QUANTITATIVE_DATE", "DATE") or not has_bounds:
        return flt

    if filter_type == "QUANTITATIVE_DATE":
        flt["filterType"] = "DATE"
        flt.pop("quantitativeFilterType", None)
    if "min" in flt:
        flt["minDate"] = flt.pop("min")
    if "max" in flt:
        flt["maxDate"] = flt.pop("max")
    if flt.get("minDate") is not None or flt.get("maxDate") is not None:
        flt["dateRangeType"] = "RANGE"
    return flt


def normalize_query(query: dict[str, Any]) -> dict[str, Any]:
    """Rewrite common model mistakes into the query shape the service accepts.

    - ``limit`` is dropped (unsupported).
    - ``aggregation`` on a field becomes ``function`` (``function`` wins).
    - date filters given as ``min``/``max`` become ``DATE`` range filters.
    """
    normalized = dict(query)
    if normalized.pop("limit", None) is not None:
        _logger.debug("Removed unsupported query.limit")
    if isinstance(normalized.get("fields"), list):
        normalized["fields"] = [_normalize_field(f) for f in normalized["fields"]]
    if isinstance(normalized.get("filters"), list):
        normalized["filters"] = [_normalize_filter(f) for f in normalized["filters"]]
    return normalized


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _optional_number(name: str, value: Any) -> int | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise invalid_params(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise invalid_params(f"{name} must be a finite number, got {value!r}")
    return int(number)


def _required_str(tool_input: dict[str, Any], key: str) -> str:
    value = tool_input.get(key)
    text = "" if value is None else str(value).strip()
    if not text:
        raise invalid_params(f"{key} is required and must be a non-empty string")
    return text


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class ToolDispatcher:
    """Execute tool calls against a :class:`ToolServiceClient`.

    Parameters
    ----------
    client:
        Session-holding tool service client.
    max_rows:
        Row cap for query results placed in the transcript.
    max_bytes:
        Byte ceiling for any serialized tool result.
    """

    def __init__(
        self,
        client: ToolServiceClient,
        max_rows: int = MAX_QUERY_ROWS,
        max_bytes: int = MAX_RESULT_BYTES,
    ) -> None:
        self._client = client
        self._max_rows = max_rows
        self._max_bytes = max_bytes
        self._handlers: dict[str, Handler] = {
            LIST_DATASOURCES: self._list_datasources,
            GET_DATASOURCE_METADATA: self._get_datasource_metadata,
            QUERY_DATASOURCE: self._query_datasource,
            GET_WORKBOOK: self._get_workbook,
            LIST_VIEWS: self._list_views,
        }

    def tool_names(self) -> list[str]:
        return list(self._handlers)

    def check_lock(self, call: ToolCall, locked_luid: str | None) -> None:
        """Raise if *call* would leave the datasource the run is locked to."""
        if not locked_luid:
            return
        if call.name in DATASOURCE_SCOPED:
            requested = str(call.input.get("datasourceLuid") or "").strip()
            if requested != locked_luid:
                raise invalid_params(
                    f'Tool call attempted to use datasource "{requested}" but session is '
                    f'locked to "{locked_luid}". You must use the locked datasource for '
                    "this session.",
                    lockedDatasourceLuid=locked_luid,
                )
        if call.name in ENUMERATE_ALL:
            raise invalid_params(
                f'Tool "{call.name}" is not available when a datasource is selected. '
                f'The session is locked to datasource "{locked_luid}".',
                lockedDatasourceLuid=locked_luid,
            )

    async def dispatch(self, call: ToolCall, locked_luid: str | None = None) -> ToolResult:
        """Run one tool call and serialize the outcome.

        Never raises for tool failures: the error is mapped and returned as
        an ``is_error`` result with ``error``, ``detail`` and
        ``recoverySuggestions`` members.
        """
        try:
            self.check_lock(call, locked_luid)
            handler = self._handlers.get(call.name)
            if handler is None:
                raise invalid_params(f"Unknown tool: {call.name}")
            result = await handler(call.input)
        except ToolError as e:
            if e.code == -32602 and call.name == QUERY_DATASOURCE:
                await self._attach_typo_suggestions(e, call.input)
            return self._error_result(call, map_error(e), e)
        except HarnessError as e:
            return self._error_result(call, map_error(e), e)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            _logger.exception("Unexpected failure executing tool %s", call.name)
            return self._error_result(call, unexpected_tool_failure(e, call.name), e)

        return format_tool_result(
            call.id, result, max_rows=self._max_rows, max_bytes=self._max_bytes,
        )

    def _error_result(
        self, call: ToolCall, mapped: UserFacingError, exc: BaseException,
    ) -> ToolResult:
        log_error(mapped, f"ToolDispatcher.{call.name}", exc)
        payload = {
            "error": mapped.message,
            "detail": str(exc),
            "recoverySuggestions": mapped.recovery_suggestions,
        }
        return format_tool_result(call.id, payload, is_error=True, max_bytes=self._max_bytes)

    async def _attach_typo_suggestions(self, error: ToolError, tool_input: dict[str, Any]) -> None:
        luid = str(tool_input.get("datasourceLuid") or "").strip()
        if not luid:
            return
        try:
            metadata = await self._client.get_datasource_metadata(luid)
        except ToolError as e:
            _logger.warning("Failed to fetch metadata for typo suggestions: %s", e)
            return
        lines = typo_suggestions(tool_input, metadata)
        if lines:
            error.recovery_suggestions.extend(lines)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _list_datasources(self, tool_input: dict[str, Any]) -> Any:
        return await self._client.list_datasources(
            filter=_optional_str(tool_input.get("filter")),
            page_size=_optional_number("pageSize", tool_input.get("pageSize")),
            limit=_optional_number("limit", tool_input.get("limit")),
        )

    async def _get_datasource_metadata(self, tool_input: dict[str, Any]) -> Any:
        return await self._client.get_datasource_metadata(
            _required_str(tool_input, "datasourceLuid"),
        )

    async def _query_datasource(self, tool_input: dict[str, Any]) -> Any:
        luid = _required_str(tool_input, "datasourceLuid")
        query = tool_input.get("query")
        if not isinstance(query, dict):
            raise invalid_params("query is required and must be an object")
        return await self._client.query_datasource(luid, normalize_query(query))

    async def _get_workbook(self, tool_input: dict[str, Any]) -> Any:
        return await self._client.get_workbook(_required_str(tool_input, "workbookId"))

    async def _list_views(self, tool_input: dict[str, Any]) -> Any:
        return await self._client.list_views(
            filter=_optional_str(tool_input.get("filter")),
            page_size=_optional_number("pageSize", tool_input.get("pageSize")),
            limit=_optional_number("limit", tool_input.get("limit")),
        )
