"""Anthropic Messages API provider.

Streaming arrives as typed SSE events. Text comes as one delta per
content block chunk; tool arguments come as `input_json_delta` fragments
for a block index and are parsed when that block stops.
"""

from __future__ import annotations

from typing import Any

from market_gateway.llm.messages import from_provider_response
from market_gateway.llm.providers.base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    BaseProvider,
    PendingToolCall,
    StreamState,
    parse_accumulated_json,
)
from market_gateway.llm.registry import ProviderName
from market_gateway.llm.types import (
    CompletionOptions,
    CompletionResult,
    ErrorEvent,
    MessageEnd,
    StreamEvent,
    TextDelta,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
    Usage,
)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    name = ProviderName.ANTHROPIC
    display_name = "Anthropic"
    api_url = "https://api.anthropic.com/v1/messages"
    default_model = "claude-3-5-haiku-20241022"
    api_key_setting = "anthropic_api_key"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _build_payload(
        self,
        options: CompletionOptions,
        messages: list[dict[str, Any]],
        system: str | None,
        tools: list[dict[str, Any]] | None,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": DEFAULT_TEMPERATURE if options.temperature is None else options.temperature,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    def _normalize_chunk(self, chunk: dict[str, Any], state: StreamState) -> list[StreamEvent]:
        event_type = chunk.get("type")
        index = chunk.get("index", 0)

        if event_type == "message_start":
            usage = (chunk.get("message") or {}).get("usage") or {}
            state.input_tokens = usage.get("input_tokens") or 0
            state.output_tokens = usage.get("output_tokens") or 0
            state.cache_creation_tokens = usage.get("cache_creation_input_tokens") or 0
            state.cache_read_tokens = usage.get("cache_read_input_tokens") or 0
            return []

        if event_type == "content_block_start":
            block = chunk.get("content_block") or {}
            if block.get("type") == "tool_use":
                state.tool_calls[index] = PendingToolCall(id=block["id"], name=block["name"])
                return [ToolUseStart(id=block["id"], name=block["name"])]
            return []

        if event_type == "content_block_delta":
            delta = chunk.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [TextDelta(text=delta.get("text", ""))]
            if delta.get("type") == "input_json_delta":
                pending = state.tool_calls.get(index)
                if pending is None:
                    return []
                fragment = delta.get("partial_json", "")
                pending.arguments += fragment
                return [ToolUseDelta(id=pending.id, partial_json=fragment)]
            return []

        if event_type == "content_block_stop":
            pending = state.tool_calls.pop(index, None)
            if pending is None:
                return []
            return [
                ToolUseEnd(
                    id=pending.id,
                    name=pending.name,
                    input=parse_accumulated_json(pending.arguments, pending.id),
                )
            ]

        if event_type == "message_delta":
            delta = chunk.get("delta") or {}
            if delta.get("stop_reason"):
                state.stop_reason = delta["stop_reason"]
            usage = chunk.get("usage") or {}
            if "output_tokens" in usage:
                state.output_tokens = usage["output_tokens"] or 0
            return []

        if event_type == "message_stop":
            state.ended = True
            return [MessageEnd(usage=state.usage(), stop_reason=state.stop_reason)]

        if event_type == "error":
            error = chunk.get("error") or {}
            return [ErrorEvent(message=error.get("message") or "Anthropic API error", code=error.get("type") or "api_error")]

        return []

    def _parse_completion(self, data: dict[str, Any], model: str) -> CompletionResult:
        message = from_provider_response(data, model)
        return CompletionResult(
            content=message.content,
            tool_calls=list(message.pending_tool_calls),
            usage=message.metadata.tokens or Usage(),
            stop_reason=data.get("stop_reason"),
            model=data.get("model") or model,
            raw=data,
        )
