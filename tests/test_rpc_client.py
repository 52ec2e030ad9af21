"""Tests for the tool RPC client (mocked HTTP via httpx.MockTransport)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from market_gateway.tools.cache import ToolCallCache
from market_gateway.tools.key_pool import KeyPoolManager
from market_gateway.tools.rpc_client import (
    SELECTED_TOOL_NAMES,
    ToolRpcClient,
    calculate_backoff,
    extract_text_content,
    mcp_tool_to_anthropic,
)
from market_gateway.tools.telemetry import InMemoryTelemetrySink, TelemetryDispatcher
from market_gateway.tools.types import ResultSource, ToolCallError, ToolErrorKind
from tests.conftest import make_settings, mock_client, rpc_error, rpc_result_text

DAILY_IBM = '{"Meta Data": {"2. Symbol": "IBM"}}'


class ScriptedServer:
    """MockTransport handler answering from a queue of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    @property
    def keys(self) -> list[str]:
        return [r.url.params["apikey"] for r in self.requests]

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def ok(text: str) -> httpx.Response:
    return httpx.Response(200, json=rpc_result_text(text))


def build(server, keys=("key-a", "key-b"), clock=None, **overrides):
    config = make_settings(**overrides)
    sink = InMemoryTelemetrySink()
    telemetry = TelemetryDispatcher(sink)
    client = ToolRpcClient(
        api_keys=list(keys),
        key_pool=KeyPoolManager(total=len(keys), telemetry=telemetry),
        cache=ToolCallCache(clock=clock) if clock else ToolCallCache(),
        telemetry=telemetry,
        config=config,
        http_client=mock_client(server),
    )
    return client, sink


# ==========================================================================
# Helpers
# ==========================================================================


class TestHelpers:
    def test_backoff_grows_and_caps(self):
        for _ in range(20):
            assert 1.0 <= calculate_backoff(0, 1.0, 5.0) <= 1.5
            assert 2.0 <= calculate_backoff(1, 1.0, 5.0) <= 2.5
            assert calculate_backoff(10, 1.0, 5.0) == 5.0

    def test_extract_text_joins_text_items(self):
        result = {"content": [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]}
        assert extract_text_content(result) == "a\nb"
        assert extract_text_content({"content": []}) is None
        assert extract_text_content("x") is None

    def test_mcp_tool_conversion(self):
        tool = {"name": "RSI", "description": "Relative strength", "inputSchema": {"type": "object"}}
        assert mcp_tool_to_anthropic(tool) == {
            "name": "RSI",
            "description": "Relative strength",
            "input_schema": {"type": "object"},
        }

    def test_mcp_tool_defaults(self):
        converted = mcp_tool_to_anthropic({"name": "CPI"})
        assert converted["description"] == "Execute CPI tool from Alpha Vantage"
        assert converted["input_schema"] == {"type": "object", "properties": {}, "required": []}


# ==========================================================================
# Success path & cache
# ==========================================================================


class TestCallToolSuccess:
    @pytest.mark.asyncio
    async def test_live_result_then_cache_hit(self):
        server = ScriptedServer(ok(DAILY_IBM))
        client, _ = build(server)

        first = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})
        second = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert first.source == ResultSource.LIVE
        assert first.payload == DAILY_IBM
        assert second.source == ResultSource.CACHE
        assert second.payload == DAILY_IBM
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_request_shape(self):
        server = ScriptedServer(ok(DAILY_IBM))
        client, _ = build(server)
        await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        body = server.bodies[0]
        assert body["jsonrpc"] == "2.0"
        assert body["method"] == "tools/call"
        assert body["params"] == {"name": "TIME_SERIES_DAILY", "arguments": {"symbol": "IBM"}}
        assert server.keys == ["key-a"]
        assert str(server.requests[0].url).startswith("https://mcp.test/mcp")

    @pytest.mark.asyncio
    async def test_keys_rotate_across_calls(self):
        server = ScriptedServer(ok("1"), ok("2"), ok("3"))
        client, _ = build(server)
        for symbol in ("IBM", "AAPL", "MSFT"):
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": symbol})
        assert server.keys == ["key-a", "key-b", "key-a"]

    @pytest.mark.asyncio
    async def test_python_dict_payload_normalized(self):
        server = ScriptedServer(ok("{'symbol': 'IBM', 'open': True}"))
        client, _ = build(server)
        result = await client.call_tool("COMPANY_OVERVIEW", {"symbol": "IBM"})
        assert json.loads(result.payload) == {"symbol": "IBM", "open": True}

    @pytest.mark.asyncio
    async def test_non_text_result_dumped_and_not_cached(self):
        server = ScriptedServer(
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"data": [1, 2]}}),
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 2, "result": {"data": [1, 2]}}),
        )
        client, _ = build(server)
        result = await client.call_tool("CPI", {})
        assert json.loads(result.payload) == {"data": [1, 2]}
        await client.call_tool("CPI", {})
        assert len(server.requests) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_notice_returned_but_not_cached(self):
        notice = "Thank you for using Alpha Vantage! Our standard API rate limit is 25 requests per day."
        server = ScriptedServer(ok(notice), ok(DAILY_IBM))
        client, _ = build(server)

        first = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})
        second = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert first.payload == notice
        assert second.payload == DAILY_IBM
        assert second.source == ResultSource.LIVE

    @pytest.mark.asyncio
    async def test_telemetry_recorded(self):
        server = ScriptedServer(ok(DAILY_IBM))
        client, sink = build(server)
        await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})
        await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})
        await client.telemetry.drain()

        assert [r.cache_hit for r in sink.cache] == [False, True]
        assert sink.cache[0].symbol == "IBM"
        assert len(sink.usage) == 1
        assert sink.usage[0].success is True
        assert sink.usage[0].api_key_index == 0
        assert sink.usage[0].input_params == {"symbol": "IBM"}
        assert [r.api_key_index for r in sink.key_usage] == [0]


# ==========================================================================
# Rotation & retries
# ==========================================================================


class TestRotationAndRetries:
    @pytest.mark.asyncio
    async def test_http_429_rotates_without_backoff(self):
        server = ScriptedServer(httpx.Response(429), ok(DAILY_IBM))
        client, _ = build(server)

        with patch("market_gateway.tools.rpc_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert result.payload == DAILY_IBM
        assert server.keys == ["key-a", "key-b"]
        assert client.key_pool.is_exhausted(0)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_json_rpc_rate_limit_rotates(self):
        server = ScriptedServer(
            httpx.Response(200, json=rpc_error(-32001, "API rate limit exceeded for this key")),
            ok(DAILY_IBM),
        )
        client, _ = build(server)
        result = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})
        assert result.source == ResultSource.LIVE
        assert server.keys == ["key-a", "key-b"]

    @pytest.mark.asyncio
    async def test_all_keys_rate_limited(self):
        server = ScriptedServer(httpx.Response(429), httpx.Response(429))
        client, _ = build(server)

        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert exc_info.value.kind == ToolErrorKind.RATE_LIMIT
        assert len(server.requests) == 2
        assert client.key_pool.next_available(2) is None

    @pytest.mark.asyncio
    async def test_exhausted_pool_makes_no_request(self):
        server = ScriptedServer()
        client, _ = build(server)
        client.key_pool.force_exhaust(0)
        client.key_pool.force_exhaust(1)

        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert exc_info.value.kind == ToolErrorKind.RATE_LIMIT
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_server_error_retried_with_backoff(self):
        server = ScriptedServer(httpx.Response(500), httpx.Response(503), ok(DAILY_IBM))
        client, _ = build(server, tool_base_backoff_seconds=1.0, tool_max_backoff_seconds=5.0)

        with patch("market_gateway.tools.rpc_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert result.payload == DAILY_IBM
        assert sleep.await_count == 2
        delays = [c.args[0] for c in sleep.await_args_list]
        assert 1.0 <= delays[0] <= 1.5
        assert 2.0 <= delays[1] <= 2.5

    @pytest.mark.asyncio
    async def test_retries_bounded(self):
        server = ScriptedServer(httpx.Response(500), httpx.Response(500), httpx.Response(500))
        client, _ = build(server)

        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert exc_info.value.kind == ToolErrorKind.NETWORK_ERROR
        assert len(server.requests) == 3

    @pytest.mark.asyncio
    async def test_retryable_rpc_code(self):
        server = ScriptedServer(httpx.Response(200, json=rpc_error(-32603, "Internal error")), ok(DAILY_IBM))
        client, _ = build(server)
        result = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})
        assert result.payload == DAILY_IBM
        assert len(server.requests) == 2

    @pytest.mark.asyncio
    async def test_timeouts_classified(self):
        server = ScriptedServer(
            httpx.ReadTimeout("read timed out"),
            httpx.ReadTimeout("read timed out"),
            httpx.ReadTimeout("read timed out"),
        )
        client, _ = build(server)

        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert exc_info.value.kind == ToolErrorKind.TIMEOUT_ERROR
        assert exc_info.value.raw_message == "Request timeout after 30.0s"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        server = ScriptedServer(httpx.Response(400, text="bad params"))
        client, _ = build(server)

        with pytest.raises(ToolCallError):
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert len(server.requests) == 1


# ==========================================================================
# Degradation: stale cache & fallback
# ==========================================================================


class TestDegradation:
    @pytest.mark.asyncio
    async def test_stale_cache_served_on_outage(self, clock):
        server = ScriptedServer(
            ok(DAILY_IBM),
            httpx.Response(500),
            httpx.Response(500),
            httpx.Response(500),
        )
        client, _ = build(server, clock=clock)
        await client.call_tool("TIME_SERIES_INTRADAY", {"symbol": "IBM"})

        clock.advance(minutes=5)  # past the 2 minute TTL
        result = await client.call_tool("TIME_SERIES_INTRADAY", {"symbol": "IBM"})

        assert result.source == ResultSource.STALE_CACHE
        assert result.is_stale
        assert result.payload == DAILY_IBM
        assert result.age_seconds == 300

    @pytest.mark.asyncio
    async def test_stale_cache_too_old(self, clock):
        server = ScriptedServer(ok(DAILY_IBM), httpx.Response(429), httpx.Response(429))
        client, _ = build(server, clock=clock)
        await client.call_tool("TIME_SERIES_INTRADAY", {"symbol": "IBM"})

        clock.advance(minutes=11)
        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_INTRADAY", {"symbol": "IBM"})
        assert exc_info.value.kind == ToolErrorKind.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_stale_not_used_for_invalid_symbol(self, clock):
        server = ScriptedServer(
            ok(DAILY_IBM),
            httpx.Response(200, json=rpc_error(-32602, "Invalid symbol: IBM")),
        )
        client, _ = build(server, clock=clock)
        await client.call_tool("TIME_SERIES_INTRADAY", {"symbol": "IBM"})

        clock.advance(minutes=5)
        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_INTRADAY", {"symbol": "IBM"})
        assert exc_info.value.kind == ToolErrorKind.INVALID_SYMBOL

    @pytest.mark.asyncio
    async def test_fallback_on_premium(self):
        def by_tool(request: httpx.Request) -> httpx.Response:
            name = json.loads(request.content)["params"]["name"]
            if name == "GLOBAL_QUOTE":
                return httpx.Response(403, text="Forbidden")
            return ok('{"Time Series (5min)": {}}')

        server = ScriptedServer(by_tool, by_tool)
        client, _ = build(server)
        result = await client.call_tool("GLOBAL_QUOTE", {"symbol": "IBM"})

        assert result.source == ResultSource.FALLBACK
        assert result.fallback_for == "GLOBAL_QUOTE"
        assert result.tool_name == "TIME_SERIES_INTRADAY"
        assert server.bodies[1]["params"] == {"name": "TIME_SERIES_INTRADAY", "arguments": {"symbol": "IBM"}}

    @pytest.mark.asyncio
    async def test_fallback_result_cached_under_fallback_tool(self):
        def by_tool(request: httpx.Request) -> httpx.Response:
            name = json.loads(request.content)["params"]["name"]
            if name == "GLOBAL_QUOTE":
                return httpx.Response(403)
            return ok("intraday")

        server = ScriptedServer(by_tool, by_tool)
        client, _ = build(server)
        await client.call_tool("GLOBAL_QUOTE", {"symbol": "IBM"})

        assert client.cache.get("TIME_SERIES_INTRADAY", {"symbol": "IBM"}) is not None
        assert client.cache.get("GLOBAL_QUOTE", {"symbol": "IBM"}) is None

    @pytest.mark.asyncio
    async def test_no_fallback_for_invalid_symbol(self):
        server = ScriptedServer(httpx.Response(200, json=rpc_error(-32602, "Invalid symbol: ZZZZ")))
        client, sink = build(server)

        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("GLOBAL_QUOTE", {"symbol": "ZZZZ"})

        assert exc_info.value.kind == ToolErrorKind.INVALID_SYMBOL
        assert exc_info.value.error.symbol == "ZZZZ"
        assert len(server.requests) == 1

        await client.telemetry.drain()
        assert sink.errors[0].error_type == "invalid_symbol"
        assert sink.usage[0].success is False

    @pytest.mark.asyncio
    async def test_fallback_is_single_hop(self):
        server = ScriptedServer(httpx.Response(403), httpx.Response(403))
        client, _ = build(server)

        chains = {"TOOL_A": "TOOL_B", "TOOL_B": "TOOL_A"}
        with patch.dict("market_gateway.tools.fallback.FALLBACK_TOOL_CHAINS", chains, clear=True):
            with pytest.raises(ToolCallError) as exc_info:
                await client.call_tool("TOOL_A", {})

        assert exc_info.value.error.tool_name == "TOOL_A"
        assert [b["params"]["name"] for b in server.bodies] == ["TOOL_A", "TOOL_B"]

    @pytest.mark.asyncio
    async def test_tool_reported_error(self):
        result = {
            "isError": True,
            "content": [{"type": "text", "text": "Invalid API call for symbol: FOO"}],
        }
        server = ScriptedServer(httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result}))
        client, _ = build(server)

        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": "FOO"})

        assert exc_info.value.kind == ToolErrorKind.INVALID_SYMBOL
        assert exc_info.value.error.symbol == "FOO"

    @pytest.mark.asyncio
    async def test_string_rpc_error_is_classified(self):
        body = {"jsonrpc": "2.0", "id": 1, "error": "Invalid API key"}
        server = ScriptedServer(httpx.Response(200, json=body))
        client, _ = build(server)

        with pytest.raises(ToolCallError) as exc_info:
            await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

        assert exc_info.value.kind == ToolErrorKind.UNKNOWN_ERROR
        assert "Invalid API key" in exc_info.value.raw_message
        assert len(server.requests) == 1


# ==========================================================================
# Protocol methods
# ==========================================================================


class TestToolListing:
    TOOLS = [
        {"name": "RSI", "description": "RSI indicator", "inputSchema": {"type": "object"}},
        {"name": "NOT_SELECTED", "description": "x"},
    ]

    @pytest.mark.asyncio
    async def test_selected_tools(self):
        server = ScriptedServer(httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"tools": self.TOOLS}}))
        client, _ = build(server)

        tools = await client.get_selected_tools()

        assert [t["name"] for t in tools] == ["RSI"]
        assert tools[0]["input_schema"] == {"type": "object"}
        assert "RSI" in SELECTED_TOOL_NAMES
        assert server.bodies[0]["method"] == "tools/list"

    @pytest.mark.asyncio
    async def test_all_tools(self):
        server = ScriptedServer(httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"tools": self.TOOLS}}))
        client, _ = build(server)
        tools = await client.get_anthropic_tools()
        assert [t["name"] for t in tools] == ["RSI", "NOT_SELECTED"]

    @pytest.mark.asyncio
    async def test_list_tools_failure_returns_empty(self):
        server = ScriptedServer(httpx.Response(404))
        client, _ = build(server)
        assert await client.list_tools() == []

    @pytest.mark.asyncio
    async def test_list_tools_unexpected_shape_returns_empty(self):
        server = ScriptedServer(
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": [{"name": "RSI"}]}),
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 2, "result": {"tools": "RSI"}}),
        )
        client, _ = build(server)
        assert await client.list_tools() == []
        assert await client.list_tools() == []

    @pytest.mark.asyncio
    async def test_initialize(self):
        server = ScriptedServer(
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"protocolVersion": "2024-11-05"}})
        )
        client, _ = build(server)
        result = await client.initialize()
        assert result["protocolVersion"] == "2024-11-05"
        assert server.bodies[0]["params"]["clientInfo"]["name"] == "market-gateway"
