"""Core types for the LLM provider layer: stream events, results, errors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from market_gateway.llm.messages import CanonicalMessage


# ---------------------------------------------------------------------------
# Stream events (tagged union on `type`)
# ---------------------------------------------------------------------------


class StreamEventType(str, Enum):
    TEXT_DELTA = "text_delta"
    TOOL_USE_START = "tool_use_start"
    TOOL_USE_DELTA = "tool_use_delta"
    TOOL_USE_END = "tool_use_end"
    MESSAGE_END = "message_end"
    ERROR = "error"


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
        }


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: Literal[StreamEventType.TEXT_DELTA] = StreamEventType.TEXT_DELTA


@dataclass(frozen=True)
class ToolUseStart:
    id: str
    name: str
    type: Literal[StreamEventType.TOOL_USE_START] = StreamEventType.TOOL_USE_START


@dataclass(frozen=True)
class ToolUseDelta:
    id: str
    partial_json: str
    type: Literal[StreamEventType.TOOL_USE_DELTA] = StreamEventType.TOOL_USE_DELTA


@dataclass(frozen=True)
class ToolUseEnd:
    """Emitted once the accumulated argument JSON is complete and parsed."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal[StreamEventType.TOOL_USE_END] = StreamEventType.TOOL_USE_END


@dataclass(frozen=True)
class MessageEnd:
    usage: Usage = field(default_factory=Usage)
    stop_reason: str | None = None
    type: Literal[StreamEventType.MESSAGE_END] = StreamEventType.MESSAGE_END


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    code: str = "upstream_error"
    type: Literal[StreamEventType.ERROR] = StreamEventType.ERROR


StreamEvent = TextDelta | ToolUseStart | ToolUseDelta | ToolUseEnd | MessageEnd | ErrorEvent


# ---------------------------------------------------------------------------
# Requests & results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input}


@dataclass
class CompletionOptions:
    """Input to create_stream / create_completion."""

    model: str
    messages: list[CanonicalMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    tools: list[dict[str, Any]] | None = None
    system: str | None = None


@dataclass
class CompletionResult:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    stop_reason: str | None = None
    provider: str = ""
    model: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProviderErrorKind(str, Enum):
    AUTH_ERROR = "auth_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CONFIG_ERROR = "config_error"
    UPSTREAM_ERROR = "upstream_error"


class ProviderError(Exception):
    """Raised by a provider with a user-presentable message."""

    kind = ProviderErrorKind.UPSTREAM_ERROR

    def __init__(self, message: str, provider: str = "", status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code


class ProviderConfigError(ProviderError, ValueError):
    kind = ProviderErrorKind.CONFIG_ERROR


class ProviderAuthError(ProviderError):
    kind = ProviderErrorKind.AUTH_ERROR


class ProviderQuotaExceededError(ProviderError):
    kind = ProviderErrorKind.QUOTA_EXCEEDED


class ProviderRateLimitError(ProviderError):
    kind = ProviderErrorKind.RATE_LIMIT


class ProviderUnavailableError(ProviderError):
    kind = ProviderErrorKind.SERVER_ERROR


class ProviderTimeoutError(ProviderError):
    kind = ProviderErrorKind.TIMEOUT
