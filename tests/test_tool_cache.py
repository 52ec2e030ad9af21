"""Tests for the Tool Call Cache."""

from __future__ import annotations

from market_gateway.tools.cache import (
    DEFAULT_TTL_MS,
    ToolCallCache,
    get_ttl_ms,
    make_cache_key,
)


class TestCacheKey:
    def test_argument_order_independent(self):
        a = make_cache_key("TIME_SERIES_DAILY", {"symbol": "IBM", "outputsize": "compact"})
        b = make_cache_key("TIME_SERIES_DAILY", {"outputsize": "compact", "symbol": "IBM"})
        assert a == b

    def test_shape(self):
        assert make_cache_key("MARKET_STATUS", {}) == "tool:MARKET_STATUS:{}"
        assert make_cache_key("MARKET_STATUS", None) == "tool:MARKET_STATUS:{}"

    def test_different_tools_differ(self):
        assert make_cache_key("RSI", {"symbol": "IBM"}) != make_cache_key("MACD", {"symbol": "IBM"})

    def test_ttl_table(self):
        assert get_ttl_ms("TIME_SERIES_INTRADAY") == 120_000
        assert get_ttl_ms("MARKET_STATUS") == 3_600_000
        assert get_ttl_ms("CPI") == 86_400_000
        assert get_ttl_ms("NEWS_SENTIMENT") == DEFAULT_TTL_MS == 60_000


class TestFreshReads:
    def test_get_after_set_has_zero_age(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("TIME_SERIES_DAILY", {"symbol": "IBM"}, '{"ok": 1}')
        hit = cache.get("TIME_SERIES_DAILY", {"symbol": "IBM"})
        assert hit is not None
        assert hit.payload == '{"ok": 1}'
        assert hit.age_seconds == 0
        assert hit.stale is False

    def test_hit_with_reordered_params(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("RSI", {"symbol": "IBM", "interval": "daily"}, "x")
        assert cache.get("RSI", {"interval": "daily", "symbol": "IBM"}) is not None

    def test_miss_on_unknown_key(self, clock):
        cache = ToolCallCache(clock=clock)
        assert cache.get("RSI", {"symbol": "IBM"}) is None

    def test_expires_at_ttl(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("TIME_SERIES_INTRADAY", {"symbol": "IBM"}, "x")
        clock.advance(seconds=119)
        hit = cache.get("TIME_SERIES_INTRADAY", {"symbol": "IBM"})
        assert hit is not None
        assert hit.age_seconds == 119

        clock.advance(seconds=1)
        assert cache.get("TIME_SERIES_INTRADAY", {"symbol": "IBM"}) is None

    def test_explicit_ttl_overrides_table(self, clock):
        cache = ToolCallCache(clock=clock)
        entry = cache.set("CPI", {}, "x", ttl_ms=1000)
        assert entry.expires_at_ms - entry.created_at_ms == 1000
        clock.advance(seconds=1)
        assert cache.get("CPI", {}) is None

    def test_set_overwrites(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("CPI", {}, "old")
        clock.advance(minutes=5)
        cache.set("CPI", {}, "new")
        hit = cache.get("CPI", {})
        assert hit.payload == "new"
        assert hit.age_seconds == 0
        assert len(cache) == 1


class TestStaleReads:
    def test_stale_after_expiry_within_max_age(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("TIME_SERIES_DAILY", {"symbol": "IBM"}, "payload")  # 1h TTL

        clock.advance(minutes=30)
        assert cache.get("TIME_SERIES_DAILY", {"symbol": "IBM"}) is not None
        stale = cache.get_stale("TIME_SERIES_DAILY", {"symbol": "IBM"}, max_age_ms=3_600_000)
        assert stale is not None
        assert stale.stale is True
        assert stale.age_seconds == 1800

        clock.advance(minutes=31)  # 61 minutes old
        assert cache.get("TIME_SERIES_DAILY", {"symbol": "IBM"}) is None
        assert cache.get_stale("TIME_SERIES_DAILY", {"symbol": "IBM"}, max_age_ms=600_000) is None
        assert cache.get_stale("TIME_SERIES_DAILY", {"symbol": "IBM"}) is None
        stale = cache.get_stale("TIME_SERIES_DAILY", {"symbol": "IBM"}, max_age_ms=2 * 3_600_000)
        assert stale is not None
        assert stale.payload == "payload"
        assert stale.age_seconds == 61 * 60

    def test_stale_beyond_max_age_misses(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("TIME_SERIES_INTRADAY", {"symbol": "IBM"}, "payload")
        clock.advance(minutes=11)
        assert cache.get_stale("TIME_SERIES_INTRADAY", {"symbol": "IBM"}) is None

    def test_stale_at_exact_max_age_hits(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("TIME_SERIES_INTRADAY", {"symbol": "IBM"}, "payload")
        clock.advance(minutes=10)
        assert cache.get_stale("TIME_SERIES_INTRADAY", {"symbol": "IBM"}, max_age_ms=600_000) is not None

    def test_stale_unknown_key(self, clock):
        cache = ToolCallCache(clock=clock)
        assert cache.get_stale("RSI", {"symbol": "IBM"}) is None


class TestStats:
    def test_hit_rate(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("CPI", {}, "x")
        cache.get("CPI", {})
        cache.get("CPI", {})
        cache.get("INFLATION", {})
        stats = cache.get_stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["sets"] == 1
        assert stats["hit_rate"] == 66.67
        assert stats["size"] == 1

    def test_empty_stats(self, clock):
        assert ToolCallCache(clock=clock).get_stats()["hit_rate"] == 0.0

    def test_clear(self, clock):
        cache = ToolCallCache(clock=clock)
        cache.set("CPI", {}, "x")
        cache.get("CPI", {})
        cache.clear()
        assert len(cache) == 0
        assert cache.get_stats()["hits"] == 0
