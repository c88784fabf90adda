"""Async client for the remote tool-execution service (MCP over HTTP).

One ``ToolServiceClient`` owns one session handle for its whole lifetime.
The handle is obtained with an ``initialize`` handshake before first use,
refreshed at most once per failing request, and shared by every
orchestration run that holds the client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from vizql_harness.config import ToolServiceSpec
from vizql_harness.errors import ToolError, ToolErrorKind, invalid_params

from .envelope import decode_nested, extract_json_from_text, parse_rpc_body
from .retry import RetryPolicy, is_accept_error, is_session_error, should_retry

_logger = logging.getLogger(__name__)

_SESSION_HEADER = "Mcp-Session-Id"
_ACCEPT = "application/json, text/event-stream"
_FALLBACK_ACCEPT = "application/json"
_MAX_ERROR_BODY = 500
_MAX_SNIPPET = 200

_DATASOURCE_KEYS = ("datasources", "items", "result", "data")
_WORKBOOK_KEYS = ("workbooks", "items", "result", "data")
_VIEW_KEYS = ("views", "items", "result", "data")
_ROW_KEYS = ("data", "result", "items", "rows")
_TOP_ROW_KEYS = ("result", "items", "rows")


def _truncate_body(text: str) -> str:
    if len(text) > _MAX_ERROR_BODY:
        return text[:_MAX_ERROR_BODY] + "... (truncated)"
    return text


def _snippet(text: str) -> str:
    if len(text) > _MAX_SNIPPET:
        return text[:_MAX_SNIPPET] + "..."
    return text


def _internal(message: str, **details: Any) -> ToolError:
    return ToolError(
        message, kind=ToolErrorKind.REMOTE_PROTOCOL, code=-32603,
        details=details or None,
    )


def unwrap_list(response: Any, keys: tuple[str, ...]) -> list[Any] | None:
    """Return the list inside *response*, checking wrapper *keys* in order."""
    if isinstance(response, str):
        response = extract_json_from_text(response)
    if isinstance(response, list):
        return response
    if isinstance(response, dict):
        for key in keys:
            value = response.get(key)
            if isinstance(value, list):
                return value
    return None


def _list_options(
    filter: str | None, page_size: int | None, limit: int | None,
) -> dict[str, Any]:
    args: dict[str, Any] = {}
    if filter is not None:
        args["filter"] = filter
    if page_size is not None:
        args["pageSize"] = page_size
    if limit is not None:
        args["limit"] = limit
    return args


class ToolServiceClient:
    """Stateful JSON-RPC client for the tool-execution service.

    Parameters
    ----------
    spec:
        Connection, timeout and retry settings.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        spec: ToolServiceSpec,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._spec = spec
        self._url = spec.url
        self._policy = RetryPolicy.from_spec(spec.retry)
        self._request_id = 0
        self._session_id: str | None = None
        self._session_ready = False
        self._handshake: asyncio.Future[None] | None = None

        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": _ACCEPT,
                "Authorization": f"Bearer {spec.auth_token}",
            },
            timeout=httpx.Timeout(spec.timeout, connect=min(spec.timeout, 30)),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def session_ready(self) -> bool:
        return self._session_ready

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def initialize(self, force: bool = False) -> None:
        """Perform the session handshake.

        Concurrent callers share one in-flight handshake.  With *force*
        the current session is discarded first, unless a handshake is
        already running, in which case its outcome is reused.
        """
        if self._handshake is None:
            if not force and self._session_ready:
                return
            if force:
                self._session_ready = False
                self._session_id = None
            task = asyncio.ensure_future(self._run_handshake())
            task.add_done_callback(self._handshake_done)
            self._handshake = task
        await asyncio.shield(self._handshake)

    def _handshake_done(self, task: asyncio.Future[None]) -> None:
        if self._handshake is task:
            self._handshake = None
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers re-raise it.
            task.exception()

    async def _run_handshake(self) -> None:
        request_id = self._next_request_id()
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "initialize",
            "params": {
                "protocolVersion": self._spec.protocol_version,
                "capabilities": {},
                "clientInfo": {
                    "name": self._spec.client_name,
                    "version": self._spec.client_version,
                },
            },
        }
        try:
            try:
                resp = await self._client.post(self._url, json=payload)
            except httpx.TimeoutException as e:
                raise ToolError(
                    "MCP initialize timeout", code=408,
                    details={"timeout": self._spec.timeout}, cause=e,
                ) from e
            except httpx.TransportError as e:
                raise ToolError(f"MCP initialize failed: {e}", cause=e) from e

            if resp.is_error:
                body = _truncate_body(resp.text)
                raise ToolError(
                    f"MCP initialize failed: {resp.status_code} "
                    f"{resp.reason_phrase}. {body}",
                    code=resp.status_code,
                    details={"statusText": resp.reason_phrase, "body": body},
                )

            message = parse_rpc_body(
                resp.text, resp.headers.get("content-type", ""), request_id,
            )
            if message is not None and message.get("error"):
                error = message["error"]
                raise ToolError(
                    f"MCP initialize error: {error.get('message', 'unknown error')}",
                    kind=ToolErrorKind.REMOTE_PROTOCOL,
                    code=error.get("code"),
                    details={"data": error.get("data")},
                )

            session_id = resp.headers.get(_SESSION_HEADER)
            if session_id:
                self._session_id = session_id
                _logger.info("MCP session established: %.8s...", session_id)
            else:
                _logger.info("MCP initialize succeeded without a session id")
            self._session_ready = True
        except ToolError:
            self._session_ready = False
            self._session_id = None
            raise

    def _capture_session(self, resp: httpx.Response) -> None:
        session_id = resp.headers.get(_SESSION_HEADER)
        if session_id and session_id != self._session_id:
            _logger.debug("MCP session id updated from response header")
            self._session_id = session_id
            self._session_ready = True

    # ------------------------------------------------------------------
    # JSON-RPC requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send one JSON-RPC request with remediation and backoff retry.

        Returns the normalized ``result`` payload.

        Raises
        ------
        ToolError
            On any failure, once retries and remediation are exhausted.
        """
        if not self._session_ready:
            await self.initialize()

        request_id = self._next_request_id()
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        tool_name = (params or {}).get("name")

        remediated = False
        attempt = 0
        accept = _ACCEPT

        while True:
            _logger.debug(
                "MCP request: %s%s (id: %d)%s",
                method, f" (tool: {tool_name})" if tool_name else "",
                request_id, f" [attempt {attempt + 1}]" if attempt else "",
            )
            try:
                return await self._attempt(payload, request_id, method, timeout, accept)
            except ToolError as err:
                if attempt == 0 and not remediated and await self._remediate(err):
                    remediated = True
                    if is_accept_error(err):
                        accept = _FALLBACK_ACCEPT
                    continue
                if remediated or not should_retry(err, attempt, self._policy):
                    raise

                attempt += 1
                delay = self._policy.delay(attempt)
                _logger.warning(
                    "MCP retry %d/%d for %s after %.1fs (%s)",
                    attempt, self._policy.max_retries, method, delay, err.message,
                )
                await asyncio.sleep(delay)

    async def _remediate(self, err: ToolError) -> bool:
        """Apply the one-shot fix for *err*, if any.  True means replay now."""
        if is_session_error(err):
            try:
                await self.initialize(force=True)
            except ToolError as init_err:
                _logger.warning("MCP session re-initialization failed: %s", init_err)
            else:
                _logger.warning("MCP session rejected; re-initialized, replaying once")
                return True
        if is_accept_error(err):
            _logger.warning(
                "MCP rejected Accept header (%s); replaying once with %s",
                err.code, _FALLBACK_ACCEPT,
            )
            return True
        return False

    def _headers(self, accept: str = _ACCEPT) -> dict[str, str]:
        headers = {"Accept": accept}
        if self._session_id:
            headers[_SESSION_HEADER] = self._session_id
        return headers

    async def _attempt(
        self,
        payload: dict[str, Any],
        request_id: int,
        method: str,
        timeout: float | None,
        accept: str = _ACCEPT,
    ) -> Any:
        effective_timeout = timeout if timeout is not None else self._spec.timeout
        try:
            resp = await self._client.post(
                self._url,
                json=payload,
                headers=self._headers(accept),
                timeout=effective_timeout,
            )
        except httpx.TimeoutException as e:
            raise ToolError(
                "MCP request timeout", code=408,
                details={"timeout": effective_timeout}, cause=e,
            ) from e
        except httpx.TransportError as e:
            raise ToolError(f"MCP request failed: {e}", cause=e) from e

        self._capture_session(resp)

        if resp.is_error:
            body = _truncate_body(resp.text)
            raise ToolError(
                f"MCP request failed: {resp.status_code} {resp.reason_phrase}. {body}",
                code=resp.status_code,
                details={"statusText": resp.reason_phrase, "body": body},
            )

        content_type = resp.headers.get("content-type", "")
        text = resp.text
        message = parse_rpc_body(text, content_type, request_id)
        if message is None:
            raise ToolError(
                "Failed to parse MCP response",
                kind=ToolErrorKind.REMOTE_PROTOCOL,
                code=-32700,
                details={"contentType": content_type, "rawSnippet": _snippet(text)},
            )
        return self._extract_result(message, request_id, method)

    @staticmethod
    def _extract_result(message: dict[str, Any], request_id: int, method: str) -> Any:
        error = message.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise ToolError(
                str(error.get("message") or "MCP error"),
                kind=ToolErrorKind.REMOTE_PROTOCOL,
                code=error.get("code"),
                details={"data": error.get("data")},
            )

        result = message.get("result")
        if isinstance(result, dict) and isinstance(result.get("content"), list):
            fragments = [
                item["text"] for item in result["content"]
                if isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"]
            ]
            if fragments:
                combined = "".join(fragments)
                if result.get("isError"):
                    raise _internal(_snippet(combined), requestId=request_id, method=method)
                return decode_nested(combined)

        if isinstance(result, str):
            return decode_nested(result)

        if result is None:
            raise _internal(
                f"MCP response missing result field for {method}",
                requestId=request_id, method=method,
            )
        return result

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a named tool via ``tools/call``."""
        return await self.request(
            "tools/call", {"name": name, "arguments": arguments or {}}, timeout=timeout,
        )

    # ------------------------------------------------------------------
    # Typed tool wrappers
    # ------------------------------------------------------------------

    async def list_datasources(
        self,
        filter: str | None = None,
        page_size: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        response = await self.call_tool(
            "list-datasources", _list_options(filter, page_size, limit),
        )
        items = unwrap_list(response, _DATASOURCE_KEYS)
        if items is None:
            raise _internal("list-datasources returned non-array response")
        return items

    async def get_datasource_metadata(self, datasource_luid: str) -> dict[str, Any]:
        if not isinstance(datasource_luid, str) or not datasource_luid.strip():
            raise invalid_params("datasourceLuid is required and must be a non-empty string")
        luid = datasource_luid.strip()

        if "placeholder" in luid.lower() or len(luid) < 10:
            _logger.debug("Skipping metadata fetch for placeholder luid %r", luid)
            return {"fields": []}

        response = await self.call_tool("get-datasource-metadata", {"datasourceLuid": luid})
        if not isinstance(response, dict) or not isinstance(response.get("fields"), list):
            _logger.warning(
                "get-datasource-metadata returned unexpected shape (%s); using empty fields",
                type(response).__name__,
            )
            return {"fields": []}
        return response

    async def query_datasource(
        self, datasource_luid: str, query: dict[str, Any],
    ) -> dict[str, Any]:
        if not isinstance(datasource_luid, str) or not datasource_luid.strip():
            raise invalid_params("datasourceLuid is required and must be a non-empty string")
        if not isinstance(query, dict):
            raise invalid_params("query is required and must be an object")
        if not isinstance(query.get("fields"), list) or not query["fields"]:
            raise invalid_params("query.fields is required and must be a non-empty array")

        response = await self.call_tool(
            "query-datasource",
            {"datasourceLuid": datasource_luid.strip(), "query": query},
        )
        if not isinstance(response, (dict, list)):
            raise _internal("query-datasource returned invalid response")
        if isinstance(response, list):
            return {"data": response}

        raw = response.get("data")
        if (
            isinstance(raw, dict)
            and isinstance(raw.get("errorType"), str)
            and isinstance(raw.get("message"), str)
        ):
            request_ref = f" [requestId={raw['requestId']}]" if raw.get("requestId") else ""
            raise _internal(
                f"query-datasource failed ({raw['errorType']}) {raw['message']}{request_ref}",
                errorType=raw["errorType"],
            )

        rows: list[Any] | None = None
        if isinstance(raw, list):
            rows = raw
        elif isinstance(raw, dict):
            rows = unwrap_list(raw, _ROW_KEYS)
        if rows is None:
            rows = unwrap_list(
                {k: v for k, v in response.items() if k != "data"}, _TOP_ROW_KEYS,
            )
        if rows is None:
            raise _internal(
                "query-datasource response.data is not an array or recognized wrapper",
                topKeys=sorted(response),
            )
        return {"data": rows}

    async def list_workbooks(
        self,
        filter: str | None = None,
        page_size: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        response = await self.call_tool(
            "list-workbooks", _list_options(filter, page_size, limit),
        )
        items = unwrap_list(response, _WORKBOOK_KEYS)
        if items is None:
            raise _internal("list-workbooks returned non-array response")
        return items

    async def get_workbook(self, workbook_id: str) -> dict[str, Any]:
        if not isinstance(workbook_id, str) or not workbook_id.strip():
            raise invalid_params("workbookId is required and must be a non-empty string")

        response = await self.call_tool("get-workbook", {"workbookId": workbook_id.strip()})
        if response is None:
            raise _internal("get-workbook returned null response")
        if isinstance(response, str):
            response = extract_json_from_text(response)
        if not isinstance(response, dict):
            raise _internal("get-workbook returned invalid response (not an object)")

        workbook = response
        for key in ("workbook", "result", "data"):
            if isinstance(response.get(key), dict):
                workbook = response[key]
                break

        wb_id, wb_name = workbook.get("id"), workbook.get("name")
        if not (isinstance(wb_id, str) and wb_id.strip() and isinstance(wb_name, str) and wb_name.strip()):
            raise _internal(
                "get-workbook response missing required fields "
                f"(id: {type(wb_id).__name__}, name: {type(wb_name).__name__})"
            )
        return workbook

    async def list_views(
        self,
        filter: str | None = None,
        page_size: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        response = await self.call_tool("list-views", _list_options(filter, page_size, limit))
        views = unwrap_list(response, _VIEW_KEYS)
        if views is None:
            raise _internal(f"list-views returned non-array response (type: {type(response).__name__})")

        for item in views:
            if isinstance(item, dict) and "code" in item and ("message" in item or "received" in item):
                detail = item.get("message")
                if not isinstance(detail, str):
                    detail = f"Invalid filter field: {item.get('received', 'unknown')}"
                raise invalid_params(f"list-views filter validation error: {detail}")

        for i, view in enumerate(views):
            if not isinstance(view, dict):
                raise _internal(f"list-views returned invalid view at index {i} (not an object)")
            v_id, v_name = view.get("id"), view.get("name")
            if not (isinstance(v_id, str) and v_id.strip() and isinstance(v_name, str) and v_name.strip()):
                raise _internal(f"list-views returned view at index {i} missing required fields")
        return views

    async def test_connection(self) -> bool:
        """Handshake and list datasources; never raises."""
        try:
            await self.initialize()
            await self.call_tool("list-datasources", {})
        except ToolError as e:
            _logger.warning("MCP connection test failed: %s", e)
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "ToolServiceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
