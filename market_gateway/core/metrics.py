"""Prometheus metrics for the gateway."""

from prometheus_client import Counter, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("market_gateway", "Market data / LLM gateway info")
APP_INFO.info({"version": "0.1.0", "name": "market_gateway"})

TOOL_CALLS = Counter(
    "tool_calls_total",
    "Tool calls by final outcome",
    ["tool", "outcome"],  # outcome: success | cache_hit | stale | fallback | error
)

TOOL_CALL_DURATION = Histogram(
    "tool_call_duration_seconds",
    "Wall time of tool RPC dispatches (cache misses only)",
    ["tool"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

CACHE_LOOKUPS = Counter(
    "tool_cache_lookups_total",
    "Tool cache lookups",
    ["result"],  # hit | miss | stale_hit | stale_miss
)

KEY_ROTATIONS = Counter(
    "tool_key_rotations_total",
    "Keys force-exhausted after an upstream rate-limit signal",
)

PROVIDER_REQUESTS = Counter(
    "llm_provider_requests_total",
    "LLM provider calls",
    ["provider", "mode", "status"],  # mode: stream | completion
)

TELEMETRY_DROPPED = Counter(
    "telemetry_records_dropped_total",
    "Telemetry records whose delivery failed",
    ["kind"],
)


def metrics_payload() -> bytes:
    """Prometheus exposition text for the default registry."""
    return generate_latest()
