"""Tool Call Cache: TTL store of tool results with a stale read path.

Keys are canonical: `tool:<name>:<params as JSON with sorted keys>`, so
argument order never causes a miss. Expiry is checked at read time only;
expired entries stay until the next successful fetch overwrites them.
The key space is bounded by the (tool, params) pairs actually requested.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from market_gateway.tools.types import CacheEntry, CacheLookup

logger = logging.getLogger(__name__)

# Default TTL per tool, in milliseconds
TOOL_CACHE_TTL_MS: dict[str, int] = {
    "MARKET_STATUS": 3_600_000,  # open/closed changes a few times a day
    "TIME_SERIES_INTRADAY": 120_000,
    "TIME_SERIES_DAILY": 3_600_000,
    "TIME_SERIES_WEEKLY": 86_400_000,
    "TIME_SERIES_MONTHLY": 86_400_000,
    "DIGITAL_CURRENCY_DAILY": 3_600_000,
    "FEDERAL_FUNDS_RATE": 86_400_000,
    "CPI": 86_400_000,
    "INFLATION": 86_400_000,
    "EARNINGS_CALENDAR": 3_600_000,
}
DEFAULT_TTL_MS = 60_000
DEFAULT_STALE_MAX_AGE_MS = 600_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_cache_key(tool_name: str, params: dict[str, Any] | None) -> str:
    """Canonical cache key; equal params in any order map to the same key."""
    return f"tool:{tool_name}:{json.dumps(params or {}, sort_keys=True, default=str)}"


def get_ttl_ms(tool_name: str) -> int:
    return TOOL_CACHE_TTL_MS.get(tool_name, DEFAULT_TTL_MS)


class ToolCallCache:
    """In-process TTL cache for tool payloads.

    Usage:
        cache = ToolCallCache()
        hit = cache.get("TIME_SERIES_DAILY", {"symbol": "IBM"})
        if hit is None:
            payload = await fetch(...)
            cache.set("TIME_SERIES_DAILY", {"symbol": "IBM"}, payload)
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.sets = 0

    def get(self, tool_name: str, params: dict[str, Any] | None) -> CacheLookup | None:
        """Fresh read: the entry is returned only while now < expires_at."""
        entry = self._entries.get(make_cache_key(tool_name, params))
        now = self._clock()
        if entry is None or now >= entry.expires_at_ms:
            self.misses += 1
            return None

        self.hits += 1
        age_seconds = entry.age_ms(now) // 1000
        logger.debug("Cache HIT %s (age %ds)", tool_name, age_seconds)
        return CacheLookup(payload=entry.payload, age_seconds=age_seconds)

    def get_stale(
        self,
        tool_name: str,
        params: dict[str, Any] | None,
        max_age_ms: int = DEFAULT_STALE_MAX_AGE_MS,
    ) -> CacheLookup | None:
        """Degraded read: any entry no older than max_age_ms, TTL ignored."""
        entry = self._entries.get(make_cache_key(tool_name, params))
        if entry is None:
            return None

        age_ms = entry.age_ms(self._clock())
        if age_ms > max_age_ms:
            return None

        logger.info("Serving stale cache for %s (age %ds)", tool_name, age_ms // 1000)
        return CacheLookup(payload=entry.payload, age_seconds=age_ms // 1000, stale=True)

    def set(
        self,
        tool_name: str,
        params: dict[str, Any] | None,
        payload: str,
        ttl_ms: int | None = None,
    ) -> CacheEntry:
        ttl = get_ttl_ms(tool_name) if ttl_ms is None else ttl_ms
        now = self._clock()
        key = make_cache_key(tool_name, params)
        entry = CacheEntry(key=key, payload=payload, created_at_ms=now, expires_at_ms=now + ttl)
        self._entries[key] = entry
        self.sets += 1
        logger.debug("Cache SET %s (ttl %ds)", tool_name, ttl // 1000)
        return entry

    def clear(self) -> None:
        self._entries.clear()
        self.hits = self.misses = self.sets = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "hit_rate": round(self.hits / lookups * 100, 2) if lookups else 0.0,
            "size": len(self._entries),
        }
