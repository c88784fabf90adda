"""Tests for the streaming model gateway client."""

from __future__ import annotations

import json

import httpx
import pytest

from vizql_harness.config import ModelSpec
from vizql_harness.errors import InvalidInputError, ModelGatewayError
from vizql_harness.llm.client import ModelClient, messages_url, split_system


@pytest.fixture
def spec() -> ModelSpec:
    return ModelSpec(gateway_url="http://gateway.test", api_key="k-123", model="test-model")


def _sse(*fragments: dict) -> bytes:
    lines = [": keep-alive", ""]
    for fragment in fragments:
        lines.append(f"event: {fragment['type']}")
        lines.append(f"data: {json.dumps(fragment)}")
        lines.append("")
    lines.extend(["data: not-json", "", "data: [DONE]", ""])
    return "\n".join(lines).encode()


def _client(spec: ModelSpec, handler) -> ModelClient:
    return ModelClient(spec, transport=httpx.MockTransport(handler))


async def _drain(client: ModelClient, **kwargs) -> list[dict]:
    return [f async for f in client.stream([{"role": "user", "content": "hi"}], **kwargs)]


class TestHelpers:
    @pytest.mark.parametrize("url", [
        "http://gw", "http://gw/", "http://gw/v1/messages", "http://gw/v1/messages/",
    ])
    def test_messages_url(self, url):
        assert messages_url(url) == "http://gw/v1/messages"

    def test_split_system(self):
        system, rest = split_system([
            {"role": "system", "content": "ctx one"},
            {"role": "user", "content": "q"},
            {"role": "system", "content": "ctx two"},
        ])
        assert system == "ctx one\n\nctx two"
        assert rest == [{"role": "user", "content": "q"}]

    def test_no_system(self):
        assert split_system([{"role": "user", "content": "q"}])[0] is None


class TestPayload:
    def test_shape(self, spec):
        client = ModelClient(spec)
        payload = client.build_payload(
            [{"role": "system", "content": "ctx"}, {"role": "user", "content": "q"}],
            tools=[{"name": "t"}],
            temperature=0.2,
        )
        assert payload == {
            "model": "test-model",
            "messages": [{"role": "user", "content": "q"}],
            "stream": True,
            "max_tokens": 1024,
            "system": "ctx",
            "tools": [{"name": "t"}],
            "temperature": 0.2,
        }

    @pytest.mark.parametrize("kwargs", [
        {"max_tokens": 0},
        {"max_tokens": "10"},
        {"temperature": 2.5},
        {"temperature": -0.1},
        {"temperature": "hot"},
    ])
    def test_invalid_options(self, spec, kwargs):
        with pytest.raises(InvalidInputError):
            ModelClient(spec).build_payload([], **kwargs)


class TestStream:
    async def test_yields_fragments_in_order(self, spec):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                content=_sse(
                    {"type": "message_start", "message": {}},
                    {"type": "content_block_delta", "index": 0,
                     "delta": {"type": "text_delta", "text": "Hel"}},
                    {"type": "content_block_delta", "index": 0,
                     "delta": {"type": "text_delta", "text": "lo"}},
                    {"type": "message_stop"},
                ),
                headers={"content-type": "text/event-stream"},
            )

        client = _client(spec, handler)
        fragments = await _drain(client)
        await client.aclose()

        assert [f["type"] for f in fragments] == [
            "message_start", "content_block_delta", "content_block_delta", "message_stop",
        ]
        request = seen[0]
        assert request.url == "http://gateway.test/v1/messages"
        assert request.headers["x-api-key"] == "k-123"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert json.loads(request.content)["stream"] is True

    async def test_json_response_yields_single_fragment(self, spec):
        message = {"type": "message", "content": [{"type": "text", "text": "hi"}]}
        client = _client(spec, lambda request: httpx.Response(200, json=message))
        assert await _drain(client) == [message]
        await client.aclose()

    async def test_http_error(self, spec):
        client = _client(spec, lambda request: httpx.Response(529, text="overloaded"))
        with pytest.raises(ModelGatewayError) as exc_info:
            await _drain(client)
        assert exc_info.value.code == 529
        assert "overloaded" in exc_info.value.message
        await client.aclose()

    async def test_timeout(self, spec):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        client = _client(spec, handler)
        with pytest.raises(ModelGatewayError) as exc_info:
            await _drain(client)
        assert exc_info.value.code == 408
        assert exc_info.value.message == "LLM request timeout"
        await client.aclose()

    async def test_network_failure(self, spec):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(spec, handler)
        with pytest.raises(ModelGatewayError, match="LLM request failed"):
            await _drain(client)
        await client.aclose()

    async def test_invalid_options_raise_on_iteration(self, spec):
        client = _client(spec, lambda request: httpx.Response(200))
        with pytest.raises(InvalidInputError):
            await _drain(client, max_tokens=0)
        await client.aclose()


class TestConnection:
    async def test_ok(self, spec):
        body = _sse({"type": "message_start", "message": {}})
        client = _client(spec, lambda r: httpx.Response(200, content=body))
        assert await client.test_connection() is True
        await client.aclose()

    async def test_failure(self, spec):
        client = _client(spec, lambda r: httpx.Response(401, text="bad key"))
        assert await client.test_connection() is False
        await client.aclose()
