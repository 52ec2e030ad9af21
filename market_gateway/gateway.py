"""Market-data / LLM gateway: the two entrypoints the rest of the app calls.

  1. execute_tool(): cache -> key pool -> tool RPC -> retries / rotation ->
     stale cache -> fallback tool. Always returns a string: the payload, or
     a JSON error object with an actionable hint.
  2. create_stream() / create_completion(): canonical messages in,
     normalized events (or one CompletionResult) out, for any registered model.

All mutable state (key counters, cache, telemetry queue) lives in one
GatewayState built by the caller, so two gateways never share counters.

Usage:
    gateway = MarketDataGateway()

    payload = await gateway.execute_tool("TIME_SERIES_DAILY", {"symbol": "IBM"})

    options = CompletionOptions(model="deepseek-chat", messages=[create_user_message("hi")])
    async for event in gateway.create_stream(options):
        ...

    await gateway.aclose()
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import Any

import httpx

from market_gateway.core.config import Settings, settings
from market_gateway.llm.providers import PROVIDER_REGISTRY, get_provider_for_model
from market_gateway.llm.providers.base import BaseProvider
from market_gateway.llm.registry import ProviderName, get_provider_name
from market_gateway.llm.types import CompletionOptions, CompletionResult, StreamEvent
from market_gateway.tools.cache import ToolCallCache
from market_gateway.tools.key_pool import KeyPoolManager
from market_gateway.tools.rpc_client import ToolRpcClient
from market_gateway.tools.telemetry import TelemetryDispatcher, TelemetrySink, build_sink
from market_gateway.tools.types import StructuredToolError, ToolCallError, ToolErrorKind, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class GatewayState:
    """Process state owned by one gateway instance."""

    key_pool: KeyPoolManager
    cache: ToolCallCache
    telemetry: TelemetryDispatcher

    @classmethod
    def create(
        cls,
        total_keys: int,
        daily_limit: int | None = None,
        sink: TelemetrySink | None = None,
        config: Settings | None = None,
    ) -> GatewayState:
        config = config or settings
        telemetry = TelemetryDispatcher(sink if sink is not None else build_sink(config))
        return cls(
            key_pool=KeyPoolManager(
                total=total_keys,
                daily_limit=daily_limit or config.tool_daily_request_limit,
                telemetry=telemetry,
            ),
            cache=ToolCallCache(),
            telemetry=telemetry,
        )


class MarketDataGateway:
    """Facade over the tool RPC client and the LLM providers."""

    def __init__(
        self,
        config: Settings | None = None,
        state: GatewayState | None = None,
        api_keys: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        provider_kwargs: dict[str, dict] | None = None,
    ):
        """
        Args:
            config: Settings override (defaults to the environment)
            state: Pre-built state; a fresh one is created when omitted
            api_keys: Tool service keys (defaults to ALPHA_VANTAGE_API_KEY[_1.._6])
            http_client: Shared client for all upstream calls (tests inject a mock transport)
            provider_kwargs: Extra kwargs per provider name (e.g. api_key)
        """
        self.config = config or settings
        self.api_keys = api_keys if api_keys is not None else self.config.tool_api_keys
        self.state = state or GatewayState.create(total_keys=len(self.api_keys), config=self.config)
        self._http_client = http_client
        self._provider_kwargs = provider_kwargs or {}
        self._providers: dict[ProviderName, BaseProvider] = {}

        self.tools = ToolRpcClient(
            api_keys=self.api_keys,
            key_pool=self.state.key_pool,
            cache=self.state.cache,
            telemetry=self.state.telemetry,
            config=self.config,
            http_client=http_client,
        )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def call_tool(self, tool_name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Like execute_tool() but keeps provenance and raises ToolCallError."""
        return await self.tools.call_tool(tool_name, arguments)

    async def execute_tool(self, tool_name: str, arguments: dict[str, Any] | None = None) -> str:
        """Run a tool; returns its payload or a JSON error string."""
        if not self.tools.is_configured:
            logger.error("Tool %s requested but no tool service API key is configured", tool_name)
            return StructuredToolError(
                kind=ToolErrorKind.UNKNOWN_ERROR,
                message="Market data service is not configured.",
                actionable_hint="Set ALPHA_VANTAGE_API_KEY",
                tool_name=tool_name,
            ).to_json()

        try:
            result = await self.tools.call_tool(tool_name, arguments)
        except ToolCallError as e:
            return e.error.to_json()
        return result.payload

    async def list_tools(self, selected_only: bool = True) -> list[dict[str, Any]]:
        """Tool definitions in Anthropic format."""
        if not self.tools.is_configured:
            return []
        if selected_only:
            return await self.tools.get_selected_tools()
        return await self.tools.get_anthropic_tools()

    # ------------------------------------------------------------------
    # LLM
    # ------------------------------------------------------------------

    def get_provider(self, model_id: str) -> BaseProvider:
        name = get_provider_name(model_id)
        if name is not None and name in self._providers:
            return self._providers[name]

        kwargs = dict(self._provider_kwargs.get(name.value if name else "", {}))
        if name is not None:
            api_key = getattr(self.config, PROVIDER_REGISTRY[name].api_key_setting, "")
            if api_key:
                kwargs.setdefault("api_key", api_key)
        kwargs.setdefault("timeout", self.config.llm_request_timeout_seconds)
        if self._http_client is not None:
            kwargs.setdefault("http_client", self._http_client)
        provider = get_provider_for_model(model_id, **kwargs)
        self._providers[provider.name] = provider
        return provider

    def _with_model(self, options: CompletionOptions) -> CompletionOptions:
        """Fill an empty options.model with the configured default model."""
        if options.model:
            return options
        return replace(options, model=self.config.default_model)

    async def create_stream(self, options: CompletionOptions) -> AsyncIterator[StreamEvent]:
        options = self._with_model(options)
        provider = self.get_provider(options.model)
        async with aclosing(provider.create_stream(options)) as stream:
            async for event in stream:
                yield event

    async def create_completion(self, options: CompletionOptions) -> CompletionResult:
        options = self._with_model(options)
        return await self.get_provider(options.model).create_completion(options)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        """Gateway status snapshot."""
        return {
            "keys": self.state.key_pool.get_stats(),
            "cache": self.state.cache.get_stats(),
            "telemetry": {
                "pending": self.state.telemetry.pending,
                "delivered": self.state.telemetry.delivered,
                "dropped": self.state.telemetry.dropped,
            },
            "configured_providers": [
                name.value
                for name, key in (
                    (ProviderName.ANTHROPIC, self.config.anthropic_api_key),
                    (ProviderName.DEEPSEEK, self.config.deepseek_api_key),
                )
                if key or name.value in self._provider_kwargs
            ],
        }

    async def aclose(self) -> None:
        await self.state.telemetry.aclose()
