"""Core types and DTOs for the tool RPC layer."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ToolErrorKind(str, Enum):
    """Classified failure of a tool call."""

    RATE_LIMIT = "rate_limit"
    PREMIUM_REQUIRED = "premium_required"
    INVALID_SYMBOL = "invalid_symbol"
    NETWORK_ERROR = "network_error"
    TIMEOUT_ERROR = "timeout_error"
    UNKNOWN_ERROR = "unknown_error"


# Kinds that may be answered from the stale cache before failing
STALE_SERVE_KINDS = frozenset(
    {ToolErrorKind.RATE_LIMIT, ToolErrorKind.NETWORK_ERROR, ToolErrorKind.TIMEOUT_ERROR}
)

# Kinds that may be answered by a substitute tool
FALLBACK_KINDS = frozenset(
    {
        ToolErrorKind.NETWORK_ERROR,
        ToolErrorKind.TIMEOUT_ERROR,
        ToolErrorKind.PREMIUM_REQUIRED,
        ToolErrorKind.UNKNOWN_ERROR,
    }
)


# ---------------------------------------------------------------------------
# Key pool
# ---------------------------------------------------------------------------


@dataclass
class KeySlot:
    """Usage counter for one configured API key."""

    index: int
    requests_today: int = 0
    reset_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    """A stored tool result. Timestamps are epoch milliseconds."""

    key: str
    payload: str
    created_at_ms: int
    expires_at_ms: int

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.created_at_ms


@dataclass(frozen=True)
class CacheLookup:
    """Result of a successful cache read."""

    payload: str
    age_seconds: int
    stale: bool = False


class ResultSource(str, Enum):
    """Where a tool payload came from."""

    LIVE = "live"
    CACHE = "cache"
    STALE_CACHE = "stale_cache"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ToolResult:
    """Payload of a successful tool call plus its provenance."""

    tool_name: str
    payload: str
    source: ResultSource = ResultSource.LIVE
    age_seconds: int = 0
    fallback_for: str | None = None  # original tool when source is FALLBACK

    @property
    def is_stale(self) -> bool:
        return self.source == ResultSource.STALE_CACHE


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@dataclass
class StructuredToolError:
    """User-presentable description of a failed tool call."""

    kind: ToolErrorKind
    message: str
    actionable_hint: str
    tool_name: str
    symbol: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "type": self.kind.value,
            "message": self.message,
            "actionable_hint": self.actionable_hint,
            "tool_name": self.tool_name,
        }
        if self.symbol:
            data["symbol"] = self.symbol
        return data

    def to_json(self) -> str:
        return json.dumps({"error": self.to_dict()}, ensure_ascii=False)


class ToolCallError(Exception):
    """Raised when a tool call fails after retries, stale reads and fallback."""

    def __init__(self, error: StructuredToolError, raw_message: str = "", status_code: int = 0):
        super().__init__(error.message)
        self.error = error
        self.raw_message = raw_message
        self.status_code = status_code

    @property
    def kind(self) -> ToolErrorKind:
        return self.error.kind


# ---------------------------------------------------------------------------
# Telemetry records
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UsageRecord:
    """One dispatched (or failed) tool call."""

    tool_name: str
    success: bool
    duration_ms: int
    api_key_index: int | None = None
    symbol: str | None = None
    input_params: dict[str, Any] = field(default_factory=dict)
    error_type: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=_utcnow)

    kind = "usage"

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["input_params"] = json.dumps(self.input_params, sort_keys=True)
        return row


@dataclass
class CacheRecord:
    """One cache lookup outcome."""

    tool_name: str
    cache_hit: bool
    symbol: str | None = None
    cache_age_seconds: int | None = None
    created_at: datetime = field(default_factory=_utcnow)

    kind = "cache"

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ErrorRecord:
    """One classified tool failure."""

    tool_name: str
    error_type: str
    error_message: str
    api_key_index: int | None = None
    response_body: str | None = None
    created_at: datetime = field(default_factory=_utcnow)

    kind = "error"

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class KeyUsageRecord:
    """Snapshot of a key's daily counter after an increment."""

    api_key_index: int
    requests_today: int
    last_reset: datetime
    created_at: datetime = field(default_factory=_utcnow)

    kind = "key_usage"

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


TelemetryRecord = UsageRecord | CacheRecord | ErrorRecord | KeyUsageRecord
