"""Provider base: one streaming/completion contract over every LLM vendor.

create_stream() and create_completion() share the same preparation:
validate options -> merge system prompt -> convert tool definitions ->
render canonical messages in the vendor's wire shape. Subclasses supply the
payload, headers and the per-chunk normalization into StreamEvents.

HTTP status codes are remapped to ProviderError subclasses here; providers
never retry.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from market_gateway.core.config import settings
from market_gateway.core.logging import log_context
from market_gateway.core.metrics import PROVIDER_REQUESTS
from market_gateway.llm.messages import system_prompt_from, to_provider_format
from market_gateway.llm.registry import ProviderName
from market_gateway.llm.tool_formats import transform_tools_for_model
from market_gateway.llm.types import (
    CompletionOptions,
    CompletionResult,
    ProviderAuthError,
    ProviderConfigError,
    ProviderError,
    ProviderQuotaExceededError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    StreamEvent,
    Usage,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7


@dataclass
class PendingToolCall:
    id: str
    name: str
    arguments: str = ""


@dataclass
class StreamState:
    """Accumulation state owned by exactly one stream."""

    tool_calls: dict[int, PendingToolCall] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    stop_reason: str | None = None
    awaiting_end: bool = False  # finish seen, MessageEnd not yet emitted
    ended: bool = False

    def usage(self) -> Usage:
        return Usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )


def parse_accumulated_json(raw: str, tool_id: str = "") -> dict[str, Any]:
    """Parse concatenated argument fragments; {} when empty or malformed."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError as e:
        logger.warning("Failed to parse tool arguments for %s: %s", tool_id or "?", e)
        return {}
    return value if isinstance(value, dict) else {"value": value}


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON payload of each `data:` line until `[DONE]`."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            yield json.loads(data)
        except ValueError:
            logger.warning("Skipping malformed SSE data: %.200s", data)


class BaseProvider(ABC):
    """Base class for all LLM vendor providers."""

    name: ProviderName
    display_name: str
    api_url: str
    default_model: str
    api_key_setting: str  # Settings attribute holding this vendor's key

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, self.api_key_setting, "")
        self.timeout = timeout or settings.llm_request_timeout_seconds
        self._http_client = http_client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _headers(self) -> dict[str, str]: ...

    @abstractmethod
    def _build_payload(
        self,
        options: CompletionOptions,
        messages: list[dict[str, Any]],
        system: str | None,
        tools: list[dict[str, Any]] | None,
        stream: bool,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def _normalize_chunk(self, chunk: dict[str, Any], state: StreamState) -> list[StreamEvent]:
        """Map one raw stream chunk to zero or more StreamEvents."""
        ...

    @abstractmethod
    def _parse_completion(self, data: dict[str, Any], model: str) -> CompletionResult: ...

    def _finish_stream(self, state: StreamState) -> list[StreamEvent]:
        """Events owed after the upstream closes (e.g. a deferred MessageEnd)."""
        return []

    def _quota_message(self) -> str:
        return f"{self.display_name} quota exceeded or insufficient balance."

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _validate_options(self, options: CompletionOptions) -> None:
        if not options.model:
            raise ProviderConfigError("Model is required", provider=self.name.value)
        if not options.messages:
            raise ProviderConfigError("Messages array is required and must not be empty", provider=self.name.value)
        if not self.is_configured():
            raise ProviderConfigError(
                f"{self.display_name} provider is not configured (missing API key)",
                provider=self.name.value,
            )

    def _prepare_payload(self, options: CompletionOptions, stream: bool) -> dict[str, Any]:
        self._validate_options(options)
        system = system_prompt_from(options.messages, options.system)
        tools = transform_tools_for_model(options.tools, options.model)
        messages = to_provider_format(options.messages, options.model)
        return self._build_payload(options, messages, system, tools, stream)

    def _raise_for_status(self, status_code: int, body: str = "") -> None:
        provider = self.name.value
        if status_code in (401, 403):
            raise ProviderAuthError(f"{self.display_name} authentication failed. Check API key.", provider, status_code)
        if status_code == 402:
            raise ProviderQuotaExceededError(self._quota_message(), provider, status_code)
        if status_code == 429:
            raise ProviderRateLimitError(
                f"{self.display_name} rate limit exceeded. Please try again later.", provider, status_code
            )
        if status_code >= 500:
            raise ProviderUnavailableError(
                f"{self.display_name} service temporarily unavailable.", provider, status_code
            )
        if status_code >= 400:
            raise ProviderError(
                f"{self.display_name} request failed ({status_code}): {body[:200]}", provider, status_code
            )

    @asynccontextmanager
    async def _client(self):
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def create_stream(self, options: CompletionOptions) -> AsyncIterator[StreamEvent]:
        """Stream normalized events for one call.

        Finite and not restartable. Closing the generator early (aclose())
        closes the upstream HTTP response.
        """
        payload = self._prepare_payload(options, stream=True)
        state = StreamState()
        status = "cancelled"

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", self.api_url, json=payload, headers=self._headers(), timeout=self.timeout
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        self._raise_for_status(resp.status_code, body)

                    async for chunk in iter_sse_data(resp):
                        for event in self._normalize_chunk(chunk, state):
                            yield event

                    for event in self._finish_stream(state):
                        yield event
            status = "ok"
        except httpx.TimeoutException as e:
            status = "timeout"
            raise ProviderTimeoutError(
                f"{self.display_name} request timed out after {self.timeout}s", self.name.value
            ) from e
        except httpx.TransportError as e:
            status = "server_error"
            raise ProviderUnavailableError(
                f"{self.display_name} service temporarily unavailable.", self.name.value
            ) from e
        except ProviderError as e:
            status = e.kind.value
            raise
        finally:
            PROVIDER_REQUESTS.labels(provider=self.name.value, mode="stream", status=status).inc()

    async def create_completion(self, options: CompletionOptions) -> CompletionResult:
        payload = self._prepare_payload(options, stream=False)

        try:
            async with self._client() as client:
                resp = await client.post(self.api_url, json=payload, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            PROVIDER_REQUESTS.labels(provider=self.name.value, mode="completion", status="timeout").inc()
            raise ProviderTimeoutError(
                f"{self.display_name} request timed out after {self.timeout}s", self.name.value
            ) from e
        except httpx.TransportError as e:
            PROVIDER_REQUESTS.labels(provider=self.name.value, mode="completion", status="server_error").inc()
            raise ProviderUnavailableError(
                f"{self.display_name} service temporarily unavailable.", self.name.value
            ) from e

        try:
            self._raise_for_status(resp.status_code, resp.text)
        except ProviderError as e:
            PROVIDER_REQUESTS.labels(provider=self.name.value, mode="completion", status=e.kind.value).inc()
            logger.warning(
                "%s completion failed: %s",
                self.display_name,
                e,
                extra=log_context(provider=self.name.value, model=options.model),
            )
            raise

        PROVIDER_REQUESTS.labels(provider=self.name.value, mode="completion", status="ok").inc()
        result = self._parse_completion(resp.json(), options.model)
        result.provider = self.name.value
        return result
