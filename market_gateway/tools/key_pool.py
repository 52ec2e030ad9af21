"""Key Pool Manager: per-key daily quotas with round-robin rotation.

Each configured API key gets a KeySlot with a request counter that resets
lazily at the next UTC midnight. Selection starts from a persistent cursor
and scans at most `total` slots, so an exhausted pool answers "none
available" in O(N) instead of looping.

Counters live in process memory and are updated without locks. That is
safe under one asyncio event loop (no await between read and write), but
NOT across several processes: each replica would keep its own counters.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from market_gateway.core.metrics import KEY_ROTATIONS
from market_gateway.tools.telemetry import TelemetryDispatcher
from market_gateway.tools.types import KeySlot, KeyUsageRecord

logger = logging.getLogger(__name__)

DAILY_REQUEST_LIMIT = 25


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    """Start of the UTC day after `now`."""
    now = now.astimezone(timezone.utc)
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


class KeyPoolManager:
    """Round-robin selector over N API keys with daily request counters.

    Usage:
        pool = KeyPoolManager(total=len(keys))
        index = pool.next_available(len(keys))
        if index is None:
            ...  # every key is out of quota until midnight UTC
        pool.increment(index)
        ...
        pool.force_exhaust(index)  # upstream said 429
    """

    def __init__(
        self,
        total: int,
        daily_limit: int = DAILY_REQUEST_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
        telemetry: TelemetryDispatcher | None = None,
    ):
        self.daily_limit = daily_limit
        self._clock = clock
        self._telemetry = telemetry
        self._cursor = 0
        reset_at = next_utc_midnight(clock())
        self._slots: list[KeySlot] = [KeySlot(index=i, reset_at=reset_at) for i in range(total)]

    @property
    def total(self) -> int:
        return len(self._slots)

    def get_slot(self, index: int) -> KeySlot:
        self._maybe_reset(index)
        return self._slots[index]

    def _maybe_reset(self, index: int) -> None:
        slot = self._slots[index]
        now = self._clock()
        if now >= slot.reset_at:
            if slot.requests_today:
                logger.info("Key %d daily counter reset (%d requests yesterday)", index, slot.requests_today)
            slot.requests_today = 0
            slot.reset_at = next_utc_midnight(now)

    def is_exhausted(self, index: int) -> bool:
        self._maybe_reset(index)
        return self._slots[index].requests_today >= self.daily_limit

    def next_available(self, total: int | None = None) -> int | None:
        """Return the next usable key index, or None when every key is exhausted.

        Args:
            total: Number of slots to consider (defaults to the pool size).
        """
        total = self.total if total is None else min(total, self.total)
        if total <= 0:
            return None

        for _ in range(total):
            index = self._cursor % total
            self._cursor = (index + 1) % total
            if not self.is_exhausted(index):
                return index

        logger.warning("All %d API keys exhausted for today", total)
        return None

    def increment(self, index: int) -> int:
        """Count one dispatched request on a key. Returns the new count."""
        self._maybe_reset(index)
        slot = self._slots[index]
        slot.requests_today += 1
        logger.debug("Key %d usage: %d/%d", index, slot.requests_today, self.daily_limit)

        if self._telemetry is not None:
            try:
                self._telemetry.submit(
                    KeyUsageRecord(
                        api_key_index=index,
                        requests_today=slot.requests_today,
                        last_reset=slot.reset_at - timedelta(days=1),
                    )
                )
            except Exception as e:
                logger.warning("Key usage persistence failed for key %d: %s", index, e)

        return slot.requests_today

    def force_exhaust(self, index: int) -> None:
        """Mark a key as used up for today after an upstream quota signal."""
        self._maybe_reset(index)
        slot = self._slots[index]
        slot.requests_today = max(slot.requests_today, self.daily_limit)
        KEY_ROTATIONS.inc()
        logger.warning("Key %d marked exhausted by upstream rate limit", index)

    def available_count(self) -> int:
        return sum(1 for i in range(self.total) if not self.is_exhausted(i))

    def get_stats(self) -> dict[str, Any]:
        """Per-key usage snapshot."""
        keys = []
        for i in range(self.total):
            slot = self.get_slot(i)
            keys.append(
                {
                    "index": i,
                    "requests_today": slot.requests_today,
                    "remaining": max(self.daily_limit - slot.requests_today, 0),
                    "reset_at": slot.reset_at.isoformat(),
                    "exhausted": slot.requests_today >= self.daily_limit,
                }
            )
        return {
            "total_keys": self.total,
            "available_keys": self.available_count(),
            "daily_limit": self.daily_limit,
            "keys": keys,
        }
