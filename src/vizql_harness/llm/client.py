"""Async streaming client for an Anthropic-compatible model gateway.

The client is stateless across calls: each ``stream()`` call issues one
``POST /v1/messages`` with ``stream: true`` and yields the raw fragment
dicts in arrival order.  Reducing them is the accumulator's job.
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator

import httpx

from vizql_harness.config import ModelSpec
from vizql_harness.errors import InvalidInputError, ModelGatewayError
from vizql_harness.types import ROLE_SYSTEM

_logger = logging.getLogger(__name__)

_MESSAGES_PATH = "/v1/messages"
_MAX_ERROR_BODY = 500


def messages_url(gateway_url: str) -> str:
    """Append ``/v1/messages`` to *gateway_url* unless already present."""
    base = gateway_url.rstrip("/")
    if base.endswith(_MESSAGES_PATH):
        return base
    return base + _MESSAGES_PATH


def split_system(messages: list[dict[str, Any]]) -> tuple[str | None, list[dict[str, Any]]]:
    """Pull system messages out of *messages* into one ``system`` string."""
    system_parts: list[str] = []
    remaining: list[dict[str, Any]] = []
    for msg in messages:
        if msg.get("role") == ROLE_SYSTEM:
            content = msg.get("content")
            if isinstance(content, str):
                system_parts.append(content)
            elif isinstance(content, list):
                system_parts.append(json.dumps(content))
            continue
        remaining.append(msg)
    system = "\n\n".join(system_parts) if system_parts else None
    return system, remaining


def _validate_options(max_tokens: Any, temperature: Any) -> None:
    if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens < 1:
        raise InvalidInputError(f"max_tokens must be an integer >= 1, got {max_tokens!r}")
    if temperature is not None:
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise InvalidInputError(f"temperature must be a number, got {temperature!r}")
        if not 0 <= temperature <= 2:
            raise InvalidInputError(f"temperature must be between 0 and 2, got {temperature!r}")


class ModelClient:
    """Streaming client for the model gateway.

    Parameters
    ----------
    spec:
        Gateway URL, credentials, model id and default limits.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        spec: ModelSpec,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.spec = spec
        self._url = messages_url(spec.gateway_url)
        self._client = httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "Accept": "text/event-stream, application/json",
                "x-api-key": spec.api_key,
                "anthropic-version": spec.anthropic_version,
            },
            timeout=httpx.Timeout(spec.timeout, connect=30),
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Build the request body; raises ``InvalidInputError`` on bad options."""
        max_tokens = self.spec.max_tokens if max_tokens is None else max_tokens
        temperature = self.spec.temperature if temperature is None else temperature
        _validate_options(max_tokens, temperature)

        system, conversation = split_system(messages)
        payload: dict[str, Any] = {
            "model": self.spec.model,
            "messages": conversation,
            "stream": True,
            "max_tokens": max_tokens,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Stream one model turn.  Yields fragment dicts.

        Raises
        ------
        InvalidInputError
            For invalid ``max_tokens`` / ``temperature``.
        ModelGatewayError
            For any failure talking to the gateway, including timeouts.
        """
        payload = self.build_payload(messages, tools, max_tokens, temperature)
        _logger.debug(
            "LLM request: %d messages, %d tools", len(payload["messages"]), len(tools or []),
        )

        try:
            async with self._client.stream("POST", self._url, json=payload) as resp:
                if resp.is_error:
                    body = (await resp.aread()).decode(errors="replace")
                    if len(body) > _MAX_ERROR_BODY:
                        body = body[:_MAX_ERROR_BODY] + "... (truncated)"
                    raise ModelGatewayError(
                        f"LLM request failed: {resp.status_code} {resp.reason_phrase}. {body}",
                        code=resp.status_code,
                        details={"statusText": resp.reason_phrase, "body": body},
                    )

                content_type = resp.headers.get("content-type", "")
                if "application/json" in content_type and "event-stream" not in content_type:
                    body = (await resp.aread()).decode(errors="replace")
                    try:
                        yield json.loads(body)
                    except json.JSONDecodeError as e:
                        raise ModelGatewayError(
                            f"LLM request failed: invalid JSON response ({e})",
                        ) from e
                    return

                async for raw_line in resp.aiter_lines():
                    fragment = _parse_sse_line(raw_line)
                    if fragment is not None:
                        yield fragment
        except httpx.TimeoutException as e:
            raise ModelGatewayError(
                "LLM request timeout", code=408, details={"timeout": self.spec.timeout},
            ) from e
        except httpx.HTTPError as e:
            raise ModelGatewayError(f"LLM request failed: {e}") from e

    async def test_connection(self) -> bool:
        """Send a tiny request to the gateway; never raises."""
        fragments = self.stream([{"role": "user", "content": "test"}], max_tokens=16)
        try:
            async with aclosing(fragments):
                async for _ in fragments:
                    return True
        except ModelGatewayError as e:
            _logger.warning("LLM connection test failed: %s", e)
        return False

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def _parse_sse_line(raw_line: str) -> dict[str, Any] | None:
    line = raw_line.strip()
    if not line or line.startswith(":") or not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        fragment = json.loads(data)
    except json.JSONDecodeError:
        _logger.warning("Failed to parse SSE data: %.100s", data)
        return None
    if not isinstance(fragment, dict):
        return None
    return fragment
