"""Fallback Resolver: static single-hop substitutes for unreliable tools."""

from __future__ import annotations

from market_gateway.tools.types import FALLBACK_KINDS, ToolErrorKind

# Premium-gated or flaky tools -> a free-tier tool that answers the same question
FALLBACK_TOOL_CHAINS: dict[str, str] = {
    "REALTIME_BULK_QUOTES": "TIME_SERIES_INTRADAY",
    "GLOBAL_QUOTE": "TIME_SERIES_INTRADAY",
}


def get_fallback_tool(tool_name: str) -> str | None:
    return FALLBACK_TOOL_CHAINS.get(tool_name)


def should_fallback(kind: ToolErrorKind) -> bool:
    """Substitution helps for outages and gated tools, never for bad symbols or quota."""
    return kind in FALLBACK_KINDS
