"""Tool error classification.

Maps an upstream failure (HTTP status and/or message text) to one of the
ToolErrorKind values, with a user-facing message and a concrete hint.
Checks run in priority order: rate limit, premium, invalid symbol,
server error, timeout, unknown.
"""

from __future__ import annotations

import re
from typing import Any

from market_gateway.tools.types import StructuredToolError, ToolErrorKind

_RATE_LIMIT_PHRASES = ("rate limit", "too many requests", "api call frequency")
_PREMIUM_PHRASES = ("premium", "subscription", "not entitled", "entitled")
_INVALID_SYMBOL_PHRASES = (
    "invalid api call",
    "invalid symbol",
    "symbol not found",
    "not found",
    "does not exist",
)
_SERVER_ERROR_PHRASES = ("server error", "internal server error", "service unavailable", "unavailable")
_TIMEOUT_PHRASES = ("timeout", "timed out", "aborted")

_SYMBOL_PATTERN = re.compile(r"symbol[:\s]+['\"]?([A-Z0-9.\-]+)['\"]?", re.IGNORECASE)


def is_rate_limit_message(message: str | None) -> bool:
    text = (message or "").lower()
    return any(p in text for p in _RATE_LIMIT_PHRASES)


def extract_symbol(message: str, arguments: dict[str, Any] | None = None) -> str:
    """Best-effort symbol from the error text, then the call arguments."""
    match = _SYMBOL_PATTERN.search(message or "")
    if match:
        return match.group(1)
    symbol = (arguments or {}).get("symbol")
    return str(symbol) if symbol else "unknown"


def classify_error(
    message: str | None,
    status_code: int = 0,
    tool_name: str = "",
    arguments: dict[str, Any] | None = None,
) -> StructuredToolError:
    """Classify a tool failure into a StructuredToolError."""
    text = (message or "").lower()

    if status_code == 429 or any(p in text for p in _RATE_LIMIT_PHRASES):
        return StructuredToolError(
            kind=ToolErrorKind.RATE_LIMIT,
            message="Market data service is temporarily rate-limited. Please try again in a minute.",
            actionable_hint="Try again in 1 minute",
            tool_name=tool_name,
        )

    if status_code == 403 or any(p in text for p in _PREMIUM_PHRASES):
        return StructuredToolError(
            kind=ToolErrorKind.PREMIUM_REQUIRED,
            message="This feature requires a premium subscription.",
            actionable_hint="This tool is not available on the free tier",
            tool_name=tool_name,
        )

    if any(p in text for p in _INVALID_SYMBOL_PHRASES):
        symbol = extract_symbol(message or "", arguments)
        return StructuredToolError(
            kind=ToolErrorKind.INVALID_SYMBOL,
            message=f"Symbol '{symbol}' not found. Please check the symbol and try again.",
            actionable_hint="Check symbol spelling and ensure it exists",
            tool_name=tool_name,
            symbol=symbol,
        )

    if 500 <= status_code < 600 or any(p in text for p in _SERVER_ERROR_PHRASES):
        return StructuredToolError(
            kind=ToolErrorKind.NETWORK_ERROR,
            message="Unable to fetch market data. The service may be temporarily unavailable.",
            actionable_hint="Try again in a few moments",
            tool_name=tool_name,
        )

    if any(p in text for p in _TIMEOUT_PHRASES):
        return StructuredToolError(
            kind=ToolErrorKind.TIMEOUT_ERROR,
            message="Request timed out. The service may be slow or unavailable.",
            actionable_hint="Try again in a few moments",
            tool_name=tool_name,
        )

    return StructuredToolError(
        kind=ToolErrorKind.UNKNOWN_ERROR,
        message=message or "An error occurred while fetching market data.",
        actionable_hint="Please try again",
        tool_name=tool_name,
    )
