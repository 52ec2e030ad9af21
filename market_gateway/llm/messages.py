"""Canonical conversation messages and per-vendor wire transforms.

A CanonicalMessage is vendor-agnostic and immutable. Transforms build new
wire dicts (or new messages) and never modify their input.

Vendor mapping:
  - Anthropic: system messages travel in the separate `system` field;
    tool results become a user turn with a `tool_result` block; pending
    tool calls become assistant `tool_use` blocks.
  - OpenAI-compatible (DeepSeek): system messages are also stripped here
    and re-added by the provider; tool results are `role: tool` entries
    with `tool_call_id`; pending tool calls become `tool_calls` with
    JSON-string arguments.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from market_gateway.llm.registry import ProviderName, get_provider_name
from market_gateway.llm.types import ToolCall, Usage

logger = logging.getLogger(__name__)

MESSAGE_TOKEN_OVERHEAD = 10


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass(frozen=True)
class MessageMetadata:
    tool_use: ToolCall | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tokens: Usage | None = None
    provider: str | None = None
    model: str | None = None
    # tool-result messages
    tool_use_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class CanonicalMessage:
    id: str
    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: MessageMetadata = field(default_factory=MessageMetadata)

    @property
    def pending_tool_calls(self) -> tuple[ToolCall, ...]:
        """Tool calls an assistant message is asking for."""
        if self.metadata.tool_calls:
            return self.metadata.tool_calls
        if self.metadata.tool_use is not None:
            return (self.metadata.tool_use,)
        return ()


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"


def create_user_message(content: str, message_id: str | None = None) -> CanonicalMessage:
    return CanonicalMessage(id=message_id or generate_message_id(), role=MessageRole.USER, content=content)


def create_assistant_message(
    content: str,
    *,
    tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
    tokens: Usage | None = None,
    provider: str | None = None,
    model: str | None = None,
    message_id: str | None = None,
) -> CanonicalMessage:
    return CanonicalMessage(
        id=message_id or generate_message_id(),
        role=MessageRole.ASSISTANT,
        content=content,
        metadata=MessageMetadata(tool_calls=tuple(tool_calls), tokens=tokens, provider=provider, model=model),
    )


def create_system_message(content: str) -> CanonicalMessage:
    return CanonicalMessage(id=generate_message_id(), role=MessageRole.SYSTEM, content=content)


def create_tool_result_message(
    tool_use_id: str,
    tool_name: str,
    result: Any,
    is_error: bool = False,
) -> CanonicalMessage:
    content = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False)
    return CanonicalMessage(
        id=generate_message_id(),
        role=MessageRole.TOOL,
        content=content,
        metadata=MessageMetadata(tool_use_id=tool_use_id, tool_name=tool_name, is_error=is_error),
    )


# ---------------------------------------------------------------------------
# Canonical -> vendor
# ---------------------------------------------------------------------------


def _provider_for(model_id: str) -> ProviderName:
    provider = get_provider_name(model_id)
    if provider is None:
        logger.warning("Unknown model %s, using Anthropic message format", model_id)
        return ProviderName.ANTHROPIC
    return provider


def _to_anthropic(messages: list[CanonicalMessage]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == MessageRole.SYSTEM:
            continue

        if msg.role == MessageRole.TOOL:
            out.append(
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": msg.metadata.tool_use_id,
                            "content": msg.content,
                            "is_error": msg.metadata.is_error,
                        }
                    ],
                }
            )
            continue

        calls = msg.pending_tool_calls if msg.role == MessageRole.ASSISTANT else ()
        if calls:
            blocks: list[dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            blocks.extend({"type": "tool_use", "id": c.id, "name": c.name, "input": c.input} for c in calls)
            out.append({"role": "assistant", "content": blocks})
            continue

        out.append({"role": msg.role.value, "content": msg.content})

    _warn_on_repeated_roles(out)
    return out


def _warn_on_repeated_roles(wire: list[dict[str, Any]]) -> None:
    # Logged only; the payload is sent as assembled.
    for prev, cur in zip(wire, wire[1:]):
        if prev["role"] == cur["role"]:
            logger.warning("Consecutive %s messages in Anthropic payload; upstream may reject it", cur["role"])


def _to_openai(messages: list[CanonicalMessage]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == MessageRole.SYSTEM:
            continue

        if msg.role == MessageRole.TOOL:
            out.append({"role": "tool", "tool_call_id": msg.metadata.tool_use_id, "content": msg.content})
            continue

        calls = msg.pending_tool_calls if msg.role == MessageRole.ASSISTANT else ()
        if calls:
            out.append(
                {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": c.id,
                            "type": "function",
                            "function": {"name": c.name, "arguments": json.dumps(c.input, ensure_ascii=False)},
                        }
                        for c in calls
                    ],
                }
            )
            continue

        out.append({"role": msg.role.value, "content": msg.content})
    return out


def to_provider_format(messages: list[CanonicalMessage], model_id: str) -> list[dict[str, Any]]:
    """Render canonical history in the wire shape of the model's vendor."""
    if _provider_for(model_id) == ProviderName.DEEPSEEK:
        return _to_openai(messages)
    return _to_anthropic(messages)


def system_prompt_from(messages: list[CanonicalMessage], system: str | None = None) -> str | None:
    """Merge an explicit system prompt with any system-role messages."""
    parts = [system] if system else []
    parts.extend(m.content for m in messages if m.role == MessageRole.SYSTEM and m.content)
    return "\n\n".join(parts) or None


# ---------------------------------------------------------------------------
# Vendor -> canonical
# ---------------------------------------------------------------------------


def parse_tool_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any]:
    """Parse OpenAI-style JSON-string arguments."""
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        logger.warning("Unparseable tool arguments: %.200s", arguments)
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def anthropic_usage(usage: dict[str, Any] | None) -> Usage | None:
    if not usage:
        return None
    return Usage(
        input_tokens=usage.get("input_tokens") or 0,
        output_tokens=usage.get("output_tokens") or 0,
        cache_creation_tokens=usage.get("cache_creation_input_tokens") or 0,
        cache_read_tokens=usage.get("cache_read_input_tokens") or 0,
    )


def openai_usage(usage: dict[str, Any] | None) -> Usage | None:
    if not usage:
        return None
    return Usage(
        input_tokens=usage.get("prompt_tokens") or 0,
        output_tokens=usage.get("completion_tokens") or 0,
        cache_read_tokens=usage.get("prompt_cache_hit_tokens") or 0,
    )


def _from_anthropic(response: dict[str, Any], model_id: str) -> CanonicalMessage:
    content = response.get("content")
    text = ""
    calls: list[ToolCall] = []
    if isinstance(content, list):
        text = "\n".join(b.get("text", "") for b in content if b.get("type") == "text")
        calls = [
            ToolCall(id=b["id"], name=b["name"], input=b.get("input") or {})
            for b in content
            if b.get("type") == "tool_use"
        ]
    elif isinstance(content, str):
        text = content

    return create_assistant_message(
        text,
        tool_calls=calls,
        tokens=anthropic_usage(response.get("usage")),
        provider=ProviderName.ANTHROPIC.value,
        model=model_id,
    )


def _from_openai(response: dict[str, Any], model_id: str) -> CanonicalMessage:
    if "choices" in response:
        choices = response.get("choices") or [{}]
        message = choices[0].get("message") or {}
    else:
        message = response  # bare assistant message

    calls = [
        ToolCall(
            id=tc.get("id", ""),
            name=(tc.get("function") or {}).get("name", ""),
            input=parse_tool_arguments((tc.get("function") or {}).get("arguments")),
        )
        for tc in message.get("tool_calls") or []
    ]
    return create_assistant_message(
        message.get("content") or "",
        tool_calls=calls,
        tokens=openai_usage(response.get("usage")),
        provider=ProviderName.DEEPSEEK.value,
        model=model_id,
    )


def from_provider_response(response: dict[str, Any], model_id: str) -> CanonicalMessage:
    """Build one canonical assistant message from a vendor response.

    Accepts a full completion response or a bare wire-format assistant message.
    """
    if _provider_for(model_id) == ProviderName.DEEPSEEK:
        return _from_openai(response, model_id)
    return _from_anthropic(response, model_id)


# ---------------------------------------------------------------------------
# Validation & budgeting
# ---------------------------------------------------------------------------


def validate_message(message: CanonicalMessage | None) -> list[str]:
    """Return a list of problems; empty means valid."""
    if message is None:
        return ["Message is None"]

    errors: list[str] = []
    try:
        MessageRole(message.role)
    except ValueError:
        errors.append(f"Invalid role: {message.role}")

    if message.content is None and not (message.role == MessageRole.ASSISTANT and message.pending_tool_calls):
        errors.append("Missing required field: content")

    if message.role == MessageRole.TOOL and not message.metadata.tool_use_id:
        errors.append("Tool result message requires metadata.tool_use_id")

    return errors


def estimate_message_tokens(message: CanonicalMessage) -> int:
    """Rough estimate: 1 token per 4 characters plus fixed overhead."""
    return math.ceil(len(message.content or "") / 4) + MESSAGE_TOKEN_OVERHEAD


def trim_to_budget(
    messages: list[CanonicalMessage],
    max_tokens: int,
    token_counter: Callable[[CanonicalMessage], int] = estimate_message_tokens,
) -> list[CanonicalMessage]:
    """Keep every system message plus the newest history that fits.

    Walks backward from the most recent message and stops at the first one
    that would exceed the budget, so history stays contiguous.
    """
    if not messages:
        return []

    system = [m for m in messages if m.role == MessageRole.SYSTEM]
    conversation = [m for m in messages if m.role != MessageRole.SYSTEM]

    total = sum(token_counter(m) for m in system)
    kept: list[CanonicalMessage] = []
    for msg in reversed(conversation):
        cost = token_counter(msg)
        if total + cost > max_tokens:
            break
        kept.append(msg)
        total += cost

    kept.reverse()
    if len(kept) < len(conversation):
        logger.debug("Trimmed %d of %d messages to fit %d tokens", len(conversation) - len(kept), len(conversation), max_tokens)
    return system + kept
