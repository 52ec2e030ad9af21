"""DeepSeek provider (OpenAI-compatible chat completions).

Tool calls stream as index-keyed fragments: the first fragment for an
index carries the call id and name, later ones only append argument text.
Arguments are parsed only when a chunk carries `finish_reason`; until then
they are raw, possibly invalid, JSON text.
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


class DeepSeekProvider(BaseProvider):
    name = ProviderName.DEEPSEEK
    display_name = "DeepSeek"
    api_url = "https://api.deepseek.com/v1/chat/completions"
    default_model = "deepseek-chat"
    api_key_setting = "deepseek_api_key"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _quota_message(self) -> str:
        return "DeepSeek API quota exceeded or insufficient balance."

    def _build_payload(
        self,
        options: CompletionOptions,
        messages: list[dict[str, Any]],
        system: str | None,
        tools: list[dict[str, Any]] | None,
        stream: bool,
    ) -> dict[str, Any]:
        # No separate system channel: system goes first in the message list
        if system:
            messages = [{"role": "system", "content": system}, *messages]

        payload: dict[str, Any] = {
            "model": options.model,
            "messages": messages,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": DEFAULT_TEMPERATURE if options.temperature is None else options.temperature,
        }
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _apply_usage(self, usage: dict[str, Any] | None, state: StreamState) -> bool:
        if not usage:
            return False
        state.input_tokens = usage.get("prompt_tokens") or 0
        state.output_tokens = usage.get("completion_tokens") or 0
        state.cache_read_tokens = usage.get("prompt_cache_hit_tokens") or 0
        return True

    def _normalize_chunk(self, chunk: dict[str, Any], state: StreamState) -> list[StreamEvent]:
        if chunk.get("error"):
            error = chunk["error"]
            return [ErrorEvent(message=error.get("message") or "DeepSeek API error", code=str(error.get("code") or "api_error"))]

        has_usage = self._apply_usage(chunk.get("usage"), state)
        choices = chunk.get("choices") or []

        if not choices:
            # Usage-only trailer after finish_reason
            if has_usage and state.awaiting_end:
                return self._end(state)
            return []

        choice = choices[0]
        delta = choice.get("delta") or {}
        events: list[StreamEvent] = []

        if delta.get("content"):
            events.append(TextDelta(text=delta["content"]))

        for tc in delta.get("tool_calls") or []:
            idx = tc.get("index", 0)
            fn = tc.get("function") or {}
            if tc.get("id"):
                pending = PendingToolCall(id=tc["id"], name=fn.get("name") or "", arguments=fn.get("arguments") or "")
                state.tool_calls[idx] = pending
                events.append(ToolUseStart(id=pending.id, name=pending.name))
                if pending.arguments:
                    events.append(ToolUseDelta(id=pending.id, partial_json=pending.arguments))
            elif idx in state.tool_calls:
                pending = state.tool_calls[idx]
                if fn.get("name"):
                    pending.name += fn["name"]
                if fn.get("arguments"):
                    pending.arguments += fn["arguments"]
                    events.append(ToolUseDelta(id=pending.id, partial_json=fn["arguments"]))

        if choice.get("finish_reason"):
            for idx in sorted(state.tool_calls):
                pending = state.tool_calls[idx]
                events.append(
                    ToolUseEnd(
                        id=pending.id,
                        name=pending.name,
                        input=parse_accumulated_json(pending.arguments, pending.id),
                    )
                )
            state.tool_calls.clear()
            state.stop_reason = choice["finish_reason"]
            if has_usage:
                events.extend(self._end(state))
            else:
                state.awaiting_end = True

        return events

    def _end(self, state: StreamState) -> list[StreamEvent]:
        state.awaiting_end = False
        state.ended = True
        return [MessageEnd(usage=state.usage(), stop_reason=state.stop_reason)]

    def _finish_stream(self, state: StreamState) -> list[StreamEvent]:
        if state.awaiting_end:
            return self._end(state)
        return []

    def _parse_completion(self, data: dict[str, Any], model: str) -> CompletionResult:
        message = from_provider_response(data, model)
        choices = data.get("choices") or [{}]
        return CompletionResult(
            content=message.content,
            tool_calls=list(message.pending_tool_calls),
            usage=message.metadata.tokens or Usage(),
            stop_reason=choices[0].get("finish_reason"),
            model=data.get("model") or model,
            raw=data,
        )
