"""Context-string provider: the system message describing the locked datasource.

Built from datasource metadata plus resolved workbook/view names and
cached per datasource for a few minutes, since the metadata call is the
most expensive part of starting a run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from vizql_harness.config import DefaultsSpec
from vizql_harness.errors import InvalidInputError, ToolError
from vizql_harness.mcp.client import ToolServiceClient

_logger = logging.getLogger(__name__)

CACHE_TTL = 300.0
MAX_CACHE_ENTRIES = 10
_NAME_LOOKUP_LIMIT = 100


@dataclass
class ContextSnapshot:
    """Resolved selection and the rendered context string."""

    datasource_luid: str
    text: str
    datasource_name: str | None = None
    workbook: dict[str, Any] | None = None
    view: dict[str, Any] | None = None
    workbook_id: str | None = None
    view_id: str | None = None
    created: float = field(default_factory=time.monotonic)


def _is_test_luid(luid: str) -> bool:
    lowered = luid.lower()
    return "test-" in lowered or "placeholder" in lowered or len(luid) < 10


def format_context(
    metadata: dict[str, Any],
    luid: str,
    datasource_name: str | None = None,
    workbook: dict[str, Any] | None = None,
    view: dict[str, Any] | None = None,
) -> str:
    lines = [
        "Current Context:",
        f"- Datasource: {datasource_name or 'Unknown Datasource'} ({luid})",
        "- IMPORTANT: This session is locked to the datasource above. "
        "You MUST use this datasource for all queries.",
        '- The "list-datasources" tool is not available. Use only "query-datasource" '
        'and "get-datasource-metadata" with this datasource.',
    ]
    if workbook and workbook.get("id") and workbook.get("name"):
        lines.append(f"- Workbook: {workbook['name']} ({workbook['id']})")
    if view and view.get("id") and view.get("name"):
        lines.append(f"- View: {view['name']} ({view['id']})")

    lines.extend(["", "Available Fields:"])
    fields_meta = [f for f in metadata.get("fields") or [] if isinstance(f, dict)]
    if fields_meta:
        for f in fields_meta:
            lines.append(
                f"  - {f.get('name')} ({f.get('dataType') or 'UNKNOWN'}, "
                f"{f.get('role') or 'UNKNOWN'})"
            )
    else:
        lines.append("  (No fields available)")
    return "\n".join(lines)


class ContextProvider:
    """Build and cache context strings per datasource.

    Parameters
    ----------
    client:
        Tool service client used for metadata and name lookups.
    defaults:
        Default selection names used when a lookup fails.
    ttl:
        Cache entry lifetime in seconds.
    max_entries:
        Cache capacity; the oldest entry is evicted first.
    clock:
        Monotonic time source (tests inject a fake).
    """

    def __init__(
        self,
        client: ToolServiceClient,
        defaults: DefaultsSpec | None = None,
        ttl: float = CACHE_TTL,
        max_entries: int = MAX_CACHE_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._defaults = defaults or DefaultsSpec()
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._cache: dict[str, ContextSnapshot] = {}

    def __len__(self) -> int:
        return len(self._cache)

    async def get(
        self,
        luid: str,
        workbook_id: str | None = None,
        view_id: str | None = None,
    ) -> str:
        snapshot = await self.resolve(luid, workbook_id, view_id)
        return snapshot.text

    async def resolve(
        self,
        luid: str,
        workbook_id: str | None = None,
        view_id: str | None = None,
    ) -> ContextSnapshot:
        """Return the cached snapshot for *luid* or build a fresh one.

        Raises
        ------
        InvalidInputError
            If *luid* is empty.
        ToolError
            If the metadata fetch fails.
        """
        if not isinstance(luid, str) or not luid.strip():
            raise InvalidInputError("datasourceLuid is required and must be a non-empty string")
        luid = luid.strip()

        cached = self._cache.get(luid)
        if cached is not None:
            if self._clock() - cached.created > self._ttl:
                del self._cache[luid]
            elif cached.workbook_id != workbook_id or cached.view_id != view_id:
                _logger.debug("Context cache invalidated, selection changed for %.8s...", luid)
                del self._cache[luid]
            else:
                _logger.debug("Context cache hit for %.8s...", luid)
                return cached

        _logger.debug("Context cache miss, fetching metadata for %.8s...", luid)
        metadata = await self._client.get_datasource_metadata(luid)
        name = await self._datasource_name(luid)
        workbook = await self._workbook(workbook_id) if workbook_id else None
        view = await self._view(view_id) if view_id else None

        snapshot = ContextSnapshot(
            datasource_luid=luid,
            text=format_context(metadata, luid, name, workbook, view),
            datasource_name=name,
            workbook=workbook,
            view=view,
            workbook_id=workbook_id,
            view_id=view_id,
            created=self._clock(),
        )
        self._store(snapshot)
        return snapshot

    def invalidate(self, luid: str | None = None) -> None:
        """Drop one entry, or every entry when *luid* is None."""
        if luid is None:
            count = len(self._cache)
            self._cache.clear()
            _logger.debug("Cleared %d context cache entries", count)
        elif self._cache.pop(luid, None) is not None:
            _logger.debug("Invalidated context cache for %.8s...", luid)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _store(self, snapshot: ContextSnapshot) -> None:
        self._cache[snapshot.datasource_luid] = snapshot
        while len(self._cache) > self._max_entries:
            oldest = min(self._cache, key=lambda k: self._cache[k].created)
            del self._cache[oldest]
            _logger.debug("Evicted oldest context cache entry %.8s...", oldest)

    def _default_datasource_name(self, luid: str) -> str | None:
        if self._defaults.datasource_luid == luid:
            return self._defaults.datasource_name
        return None

    async def _datasource_name(self, luid: str) -> str | None:
        if _is_test_luid(luid):
            return self._default_datasource_name(luid)
        try:
            datasources = await self._client.list_datasources(limit=_NAME_LOOKUP_LIMIT)
        except ToolError as e:
            _logger.warning("Datasource name lookup failed: %s", e)
            return self._default_datasource_name(luid)
        for ds in datasources:
            if isinstance(ds, dict) and ds.get("id") == luid:
                return ds.get("name")
        return self._default_datasource_name(luid)

    async def _workbook(self, workbook_id: str) -> dict[str, Any] | None:
        try:
            workbook = await self._client.get_workbook(workbook_id)
        except ToolError as e:
            _logger.warning("Workbook lookup failed for %.8s...: %s", workbook_id, e)
            if self._defaults.workbook_id == workbook_id:
                return {"id": workbook_id, "name": self._defaults.workbook_name}
            return None
        return {"id": workbook.get("id"), "name": workbook.get("name")}

    async def _view(self, view_id: str) -> dict[str, Any] | None:
        try:
            views = await self._client.list_views(limit=_NAME_LOOKUP_LIMIT)
        except ToolError as e:
            _logger.warning("View lookup failed for %.8s...: %s", view_id, e)
            if self._defaults.view_id == view_id:
                return {"id": view_id, "name": self._defaults.view_name}
            return None
        for v in views:
            if v.get("id") == view_id:
                return {"id": v["id"], "name": v.get("name")}
        return None
