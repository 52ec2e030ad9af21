"""Tool RPC client (JSON-RPC 2.0 over HTTP, "MCP" tool protocol).

Per tool call:
  1. Cache lookup. A fresh hit short-circuits everything below.
  2. SELECT_KEY -> SEND
       - success             -> normalize payload, cache, return
       - rate limit (429 or rate-limit phrasing in a JSON-RPC error)
                             -> force-exhaust key, rotate to the next key,
                                resend without backoff (at most once per
                                remaining key)
       - server error (500/502/503, JSON-RPC -32603/-32000, transport
         failure, timeout)   -> backoff min(base * 2^attempt + jitter, 5s),
                                resend (at most 2 retries)
       - anything else       -> terminal
  3. On failure: classify, then stale cache (rate_limit/network/timeout),
     then a single-hop fallback tool (network/timeout/premium/unknown),
     then ToolCallError.

Telemetry (cache hit/miss, usage, errors) is submitted fire-and-forget.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import random
import time
from dataclasses import replace
from typing import Any

import httpx

from market_gateway.core.config import Settings, settings
from market_gateway.core.logging import log_context
from market_gateway.core.metrics import CACHE_LOOKUPS, TOOL_CALL_DURATION, TOOL_CALLS
from market_gateway.tools.cache import ToolCallCache
from market_gateway.tools.errors import classify_error, is_rate_limit_message
from market_gateway.tools.fallback import get_fallback_tool, should_fallback
from market_gateway.tools.key_pool import KeyPoolManager
from market_gateway.tools.normalizer import detect_stale_data, normalize_tool_payload
from market_gateway.tools.telemetry import TelemetryDispatcher
from market_gateway.tools.types import (
    STALE_SERVE_KINDS,
    CacheRecord,
    ErrorRecord,
    ResultSource,
    StructuredToolError,
    ToolCallError,
    ToolResult,
    UsageRecord,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "market-gateway", "version": "0.1.0"}

RETRYABLE_HTTP_STATUSES = (500, 502, 503)
RETRYABLE_RPC_CODES = (-32603, -32000)

# Curated tool set offered to the chat model
SELECTED_TOOL_NAMES: list[str] = [
    # Market state & prices
    "MARKET_STATUS",
    "TIME_SERIES_INTRADAY",
    "TIME_SERIES_DAILY",
    # Crypto
    "DIGITAL_CURRENCY_DAILY",
    "CURRENCY_EXCHANGE_RATE",
    # Market intelligence
    "NEWS_SENTIMENT",
    "TOP_GAINERS_LOSERS",
    "SYMBOL_SEARCH",
    # Technical indicators
    "RSI",
    "MACD",
    "BBANDS",
    "VWAP",
    "EMA",
    "SMA",
    "STOCH",
    "ATR",
    # Fundamentals
    "COMPANY_OVERVIEW",
    "EARNINGS_CALENDAR",
    "EARNINGS",
    # Economic indicators
    "TREASURY_YIELD",
    "FEDERAL_FUNDS_RATE",
    "CPI",
    "INFLATION",
]


class RpcTransportError(Exception):
    """One failed RPC exchange, tagged with how the retry loop should treat it."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        rpc_code: int | None = None,
        key_index: int | None = None,
        response_body: str | None = None,
        rate_limited: bool = False,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.rpc_code = rpc_code
        self.key_index = key_index
        self.response_body = response_body
        self.rate_limited = rate_limited
        self.retryable = retryable


def calculate_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 5.0) -> float:
    """Exponential backoff with jitter.

    Formula: min(base * 2^attempt + jitter, max_delay)
    Jitter: random(0, base * 0.5)
    """
    exponential = base_delay * (2**attempt)
    jitter = random.uniform(0, base_delay * 0.5)
    return min(exponential + jitter, max_delay)


def mcp_tool_to_anthropic(tool: dict[str, Any]) -> dict[str, Any]:
    """Convert an MCP tool definition to the Anthropic tool shape."""
    return {
        "name": tool["name"],
        "description": tool.get("description") or f"Execute {tool['name']} tool from Alpha Vantage",
        "input_schema": tool.get("inputSchema")
        or tool.get("input_schema")
        or {"type": "object", "properties": {}, "required": []},
    }


def extract_text_content(result: Any) -> str | None:
    """Join the text items of an MCP `result.content` array, or None if there are none."""
    if not isinstance(result, dict):
        return None
    content = result.get("content")
    if not isinstance(content, list):
        return None
    texts = [str(item.get("text") or "") for item in content if isinstance(item, dict) and item.get("type") == "text"]
    text = "\n".join(texts)
    return text or None


class ToolRpcClient:
    """Executes tool calls against the tool RPC endpoint.

    Usage:
        client = ToolRpcClient(
            api_keys=settings.tool_api_keys,
            key_pool=KeyPoolManager(total=len(settings.tool_api_keys)),
            cache=ToolCallCache(),
            telemetry=TelemetryDispatcher(InMemoryTelemetrySink()),
        )
        result = await client.call_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})
        print(result.payload, result.source)
    """

    def __init__(
        self,
        api_keys: list[str],
        key_pool: KeyPoolManager,
        cache: ToolCallCache,
        telemetry: TelemetryDispatcher,
        config: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        config = config or settings
        self.api_keys = list(api_keys)
        self.key_pool = key_pool
        self.cache = cache
        self.telemetry = telemetry
        self.server_url = config.mcp_server_url
        self.timeout = config.tool_request_timeout_seconds
        self.max_retries = config.tool_max_retries
        self.base_backoff = config.tool_base_backoff_seconds
        self.max_backoff = config.tool_max_backoff_seconds
        self.stale_max_age_ms = config.stale_cache_max_age_ms
        self._http_client = http_client
        self._ids = itertools.count(1)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_keys)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, key_index: int, body: dict[str, Any]) -> httpx.Response:
        params = {"apikey": self.api_keys[key_index]}
        if self._http_client is not None:
            return await self._http_client.post(self.server_url, json=body, params=params, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.server_url, json=body, params=params)

    def _select_key(self) -> int:
        index = self.key_pool.next_available(len(self.api_keys))
        if index is None:
            raise RpcTransportError(
                "Rate limit: all API keys exhausted for today",
                status_code=429,
            )
        self.key_pool.increment(index)
        return index

    async def _send_once(self, key_index: int, body: dict[str, Any]) -> Any:
        """One HTTP exchange. Returns the JSON-RPC `result` or raises RpcTransportError."""
        try:
            resp = await self._post(key_index, body)
        except httpx.TimeoutException as e:
            raise RpcTransportError(
                f"Request timeout after {self.timeout}s",
                key_index=key_index,
                retryable=True,
            ) from e
        except httpx.TransportError as e:
            raise RpcTransportError(
                f"Service unavailable: {type(e).__name__}: {e}",
                key_index=key_index,
                retryable=True,
            ) from e

        if resp.status_code == 429:
            retry_after = resp.headers.get("retry-after") or "unknown"
            raise RpcTransportError(
                f"Rate limit exceeded (429) on key {key_index}. Retry after: {retry_after}",
                status_code=429,
                key_index=key_index,
                rate_limited=True,
            )

        if resp.status_code >= 400:
            body_text = resp.text[:500]
            raise RpcTransportError(
                f"Tool RPC request failed: HTTP {resp.status_code}"
                + (f" - {body_text}" if body_text else ""),
                status_code=resp.status_code,
                key_index=key_index,
                response_body=body_text or None,
                retryable=resp.status_code in RETRYABLE_HTTP_STATUSES,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise RpcTransportError(
                "Tool RPC returned a non-JSON body",
                status_code=resp.status_code,
                key_index=key_index,
                response_body=resp.text[:500],
            ) from e

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            if isinstance(error, dict):
                message = str(error.get("message") or "")
                code = error.get("code")
            else:
                message = str(error)
                code = None
            rate_limited = code == 429 or is_rate_limit_message(message)
            retryable = code in RETRYABLE_RPC_CODES
            raise RpcTransportError(
                f"Tool RPC {'server error' if retryable else 'error'} {code}: {message}",
                status_code=429 if rate_limited else 0,
                rpc_code=code,
                key_index=key_index,
                response_body=json.dumps(error)[:500],
                rate_limited=rate_limited,
                retryable=retryable,
            )

        return data.get("result") if isinstance(data, dict) else data

    async def request(self, method: str, params: dict[str, Any] | None = None) -> tuple[Any, int]:
        """Send one JSON-RPC request with rotation and retries.

        Returns:
            (result, key_index) for the key that finally succeeded.
        """
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or {}}
        key_index = self._select_key()
        attempt = 0
        rotations = 0

        while True:
            try:
                result = await self._send_once(key_index, body)
                return result, key_index
            except RpcTransportError as e:
                if e.rate_limited:
                    self.key_pool.force_exhaust(key_index)
                    next_index = self.key_pool.next_available(len(self.api_keys))
                    if next_index is None or next_index == key_index or rotations >= len(self.api_keys) - 1:
                        logger.error(
                            "All API keys exhausted after rate limit on key %d",
                            key_index,
                            extra=log_context(key_index=key_index),
                        )
                        raise
                    logger.info(
                        "Switching from key %d to key %d due to rate limit",
                        key_index,
                        next_index,
                        extra=log_context(key_index=next_index),
                    )
                    rotations += 1
                    key_index = next_index
                    self.key_pool.increment(key_index)
                    continue

                if e.retryable and attempt < self.max_retries:
                    delay = calculate_backoff(attempt, self.base_backoff, self.max_backoff)
                    attempt += 1
                    logger.warning(
                        "Retrying %s after %s (attempt %d/%d) in %.1fs",
                        method,
                        e.message,
                        attempt,
                        self.max_retries,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                raise

    # ------------------------------------------------------------------
    # Protocol methods
    # ------------------------------------------------------------------

    async def initialize(self) -> dict[str, Any]:
        """Capability negotiation."""
        result, _ = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "clientInfo": CLIENT_INFO,
            },
        )
        return result or {}

    async def list_tools(self) -> list[dict[str, Any]]:
        """Tool definitions from the server, or [] when the call fails."""
        try:
            result, _ = await self.request("tools/list", {})
        except RpcTransportError as e:
            logger.error("List tools failed: %s", e)
            return []
        if not isinstance(result, dict):
            logger.warning("Unexpected tools/list result: %r", result)
            return []
        tools = result.get("tools")
        return tools if isinstance(tools, list) else []

    async def get_anthropic_tools(self, filter_tools: list[str] | None = None) -> list[dict[str, Any]]:
        tools = await self.list_tools()
        if filter_tools is not None:
            tools = [t for t in tools if t.get("name") in filter_tools]
            missing = set(filter_tools) - {t.get("name") for t in tools}
            if missing:
                logger.warning("Requested tools not offered by server: %s", ", ".join(sorted(missing)))
        return [mcp_tool_to_anthropic(t) for t in tools]

    async def get_selected_tools(self) -> list[dict[str, Any]]:
        return await self.get_anthropic_tools(SELECTED_TOOL_NAMES)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def call_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        *,
        allow_fallback: bool = True,
    ) -> ToolResult:
        """Execute one tool.

        Raises:
            ToolCallError: when live retrieval, stale cache and fallback all fail.
        """
        arguments = dict(arguments or {})
        symbol = arguments.get("symbol")

        cached = self.cache.get(tool_name, arguments)
        if cached is not None:
            CACHE_LOOKUPS.labels(result="hit").inc()
            TOOL_CALLS.labels(tool=tool_name, outcome="cache_hit").inc()
            self.telemetry.submit(
                CacheRecord(tool_name=tool_name, cache_hit=True, symbol=symbol, cache_age_seconds=cached.age_seconds)
            )
            return ToolResult(
                tool_name=tool_name,
                payload=cached.payload,
                source=ResultSource.CACHE,
                age_seconds=cached.age_seconds,
            )

        CACHE_LOOKUPS.labels(result="miss").inc()
        self.telemetry.submit(CacheRecord(tool_name=tool_name, cache_hit=False, symbol=symbol))

        start = time.monotonic()
        key_index = None
        try:
            result, key_index = await self.request("tools/call", {"name": tool_name, "arguments": arguments})
            payload, cacheable = self._extract_payload(tool_name, result, key_index)
        except RpcTransportError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            TOOL_CALL_DURATION.labels(tool=tool_name).observe(duration_ms / 1000)
            error = classify_error(e.message, e.status_code, tool_name, arguments)
            self.telemetry.submit(
                UsageRecord(
                    tool_name=tool_name,
                    success=False,
                    duration_ms=duration_ms,
                    api_key_index=e.key_index,
                    symbol=symbol,
                    input_params=arguments,
                    error_type=error.kind.value,
                    error_message=e.message[:500],
                )
            )
            self.telemetry.submit(
                ErrorRecord(
                    tool_name=tool_name,
                    error_type=error.kind.value,
                    error_message=error.message,
                    api_key_index=e.key_index,
                    response_body=e.response_body,
                )
            )
            return await self._degrade(tool_name, arguments, error, e, allow_fallback)

        duration_ms = int((time.monotonic() - start) * 1000)
        TOOL_CALL_DURATION.labels(tool=tool_name).observe(duration_ms / 1000)

        if cacheable:
            self.cache.set(tool_name, arguments, payload)

        self.telemetry.submit(
            UsageRecord(
                tool_name=tool_name,
                success=True,
                duration_ms=duration_ms,
                api_key_index=key_index,
                symbol=symbol,
                input_params=arguments,
            )
        )
        TOOL_CALLS.labels(tool=tool_name, outcome="success").inc()
        logger.info(
            "Tool %s returned %d chars in %dms (key %d)",
            tool_name,
            len(payload),
            duration_ms,
            key_index,
            extra=log_context(tool_name=tool_name, key_index=key_index),
        )
        return ToolResult(tool_name=tool_name, payload=payload)

    def _extract_payload(self, tool_name: str, result: Any, key_index: int) -> tuple[str, bool]:
        """Turn an MCP result into (payload, cacheable)."""
        text = extract_text_content(result)

        if isinstance(result, dict) and result.get("isError"):
            raise RpcTransportError(text or "Tool reported an error", key_index=key_index, response_body=text)

        if text is None:
            logger.warning("Unexpected result format for %s, returning raw result", tool_name)
            return json.dumps(result, ensure_ascii=False), False

        payload = normalize_tool_payload(text)

        warning = detect_stale_data(payload)
        if warning:
            logger.warning("Stale data detected in %s: %s", tool_name, warning)

        if is_rate_limit_message(payload):
            logger.error("Rate limit notice in %s result: %s", tool_name, payload[:200])
            return payload, False

        return payload, True

    async def _degrade(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        error: StructuredToolError,
        cause: RpcTransportError,
        allow_fallback: bool,
    ) -> ToolResult:
        """Stale cache, then fallback tool, then ToolCallError."""
        if error.kind in STALE_SERVE_KINDS:
            stale = self.cache.get_stale(tool_name, arguments, self.stale_max_age_ms)
            if stale is not None:
                CACHE_LOOKUPS.labels(result="stale_hit").inc()
                TOOL_CALLS.labels(tool=tool_name, outcome="stale").inc()
                logger.warning(
                    "%s on %s, serving stale cache (%ds old)",
                    error.kind.value,
                    tool_name,
                    stale.age_seconds,
                    extra=log_context(tool_name=tool_name),
                )
                return ToolResult(
                    tool_name=tool_name,
                    payload=stale.payload,
                    source=ResultSource.STALE_CACHE,
                    age_seconds=stale.age_seconds,
                )
            CACHE_LOOKUPS.labels(result="stale_miss").inc()

        fallback_tool = get_fallback_tool(tool_name)
        if allow_fallback and fallback_tool and should_fallback(error.kind):
            logger.info("Tool %s failed (%s), trying fallback %s", tool_name, error.kind.value, fallback_tool)
            try:
                result = await self.call_tool(fallback_tool, arguments, allow_fallback=False)
            except ToolCallError as fe:
                logger.error("Fallback tool %s also failed: %s", fallback_tool, fe)
            else:
                TOOL_CALLS.labels(tool=tool_name, outcome="fallback").inc()
                return replace(result, source=ResultSource.FALLBACK, fallback_for=tool_name)

        TOOL_CALLS.labels(tool=tool_name, outcome="error").inc()
        logger.error(
            "Tool call failed (%s): %s [%s]",
            tool_name,
            cause.message,
            error.kind.value,
            extra=log_context(tool_name=tool_name, key_index=cause.key_index),
        )
        raise ToolCallError(error, raw_message=cause.message, status_code=cause.status_code) from cause
