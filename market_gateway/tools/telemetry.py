"""Fire-and-forget telemetry for tool calls.

Records (usage, cache hit/miss, error, key usage) are handed to a
TelemetryDispatcher, which schedules delivery to a TelemetrySink as a
detached asyncio task. Callers never await delivery and never see its
failures; failed deliveries are logged and counted.

Sinks:
  - InMemoryTelemetrySink: keeps records in lists (default, tests)
  - NullTelemetrySink: discards everything
  - ClickHouseTelemetrySink: append-only MergeTree tables via clickhouse-connect
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import clickhouse_connect

from market_gateway.core.config import Settings, settings
from market_gateway.core.metrics import TELEMETRY_DROPPED
from market_gateway.tools.types import (
    CacheRecord,
    ErrorRecord,
    KeyUsageRecord,
    TelemetryRecord,
    UsageRecord,
)

logger = logging.getLogger(__name__)


class TelemetrySink(ABC):
    """Destination for telemetry records."""

    @abstractmethod
    async def write(self, record: TelemetryRecord) -> None:
        """Persist one record. May raise; the dispatcher handles failures."""
        ...

    async def close(self) -> None:
        return None


class NullTelemetrySink(TelemetrySink):
    async def write(self, record: TelemetryRecord) -> None:
        return None


class InMemoryTelemetrySink(TelemetrySink):
    """Keeps every record in memory, grouped by kind."""

    def __init__(self):
        self.usage: list[UsageRecord] = []
        self.cache: list[CacheRecord] = []
        self.errors: list[ErrorRecord] = []
        self.key_usage: list[KeyUsageRecord] = []

    async def write(self, record: TelemetryRecord) -> None:
        if isinstance(record, UsageRecord):
            self.usage.append(record)
        elif isinstance(record, CacheRecord):
            self.cache.append(record)
        elif isinstance(record, ErrorRecord):
            self.errors.append(record)
        elif isinstance(record, KeyUsageRecord):
            self.key_usage.append(record)
        else:
            raise TypeError(f"Unsupported telemetry record: {type(record).__name__}")


# ---------------------------------------------------------------------------
# ClickHouse sink
# ---------------------------------------------------------------------------

_TABLES: dict[type, str] = {
    UsageRecord: "mcp_api_usage",
    CacheRecord: "mcp_cache_stats",
    ErrorRecord: "mcp_errors",
    KeyUsageRecord: "mcp_key_usage",
}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS mcp_api_usage (
        tool_name       LowCardinality(String),
        success         Bool,
        duration_ms     UInt32,
        api_key_index   Nullable(UInt8),
        symbol          Nullable(String),
        input_params    String,
        error_type      Nullable(String),
        error_message   Nullable(String),
        created_at      DateTime64(3, 'UTC')
    )
    ENGINE = MergeTree
    PARTITION BY toYYYYMM(created_at)
    ORDER BY (tool_name, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS mcp_cache_stats (
        tool_name           LowCardinality(String),
        cache_hit           Bool,
        symbol              Nullable(String),
        cache_age_seconds   Nullable(UInt32),
        created_at          DateTime64(3, 'UTC')
    )
    ENGINE = MergeTree
    PARTITION BY toYYYYMM(created_at)
    ORDER BY (tool_name, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS mcp_errors (
        tool_name       LowCardinality(String),
        error_type      LowCardinality(String),
        error_message   String,
        api_key_index   Nullable(UInt8),
        response_body   Nullable(String),
        created_at      DateTime64(3, 'UTC')
    )
    ENGINE = MergeTree
    PARTITION BY toYYYYMM(created_at)
    ORDER BY (error_type, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS mcp_key_usage (
        api_key_index   UInt8,
        requests_today  UInt32,
        last_reset      DateTime64(3, 'UTC'),
        created_at      DateTime64(3, 'UTC')
    )
    ENGINE = ReplacingMergeTree(created_at)
    ORDER BY api_key_index
    """,
]


class ClickHouseTelemetrySink(TelemetrySink):
    """Writes records to ClickHouse. clickhouse-connect is sync, so inserts run in a thread."""

    def __init__(self, config: Settings | None = None, client=None):
        self._config = config or settings
        self._client = client
        self._schema_ready = False

    def _get_client(self):
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                host=self._config.clickhouse_host,
                port=self._config.clickhouse_port,
                username=self._config.clickhouse_user,
                password=self._config.clickhouse_password,
                database=self._config.clickhouse_db,
            )
        return self._client

    def init_schema(self) -> None:
        """Create telemetry tables if they don't exist."""
        client = self._get_client()
        for ddl in _SCHEMA:
            client.command(ddl)
        self._schema_ready = True
        logger.info("ClickHouse telemetry schema initialized")

    def _insert(self, record: TelemetryRecord) -> None:
        if not self._schema_ready:
            self.init_schema()
        row = record.to_row()
        columns = list(row.keys())
        self._get_client().insert(_TABLES[type(record)], [list(row.values())], column_names=columns)

    async def write(self, record: TelemetryRecord) -> None:
        await asyncio.to_thread(self._insert, record)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def build_sink(config: Settings | None = None) -> TelemetrySink:
    """Factory: sink for the configured TELEMETRY_BACKEND."""
    config = config or settings
    backend = config.telemetry_backend.lower()
    if backend == "clickhouse":
        return ClickHouseTelemetrySink(config)
    if backend == "none":
        return NullTelemetrySink()
    if backend == "memory":
        return InMemoryTelemetrySink()
    raise ValueError(f"Unknown telemetry backend: {config.telemetry_backend}")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TelemetryDispatcher:
    """Schedules sink writes without blocking the caller.

    Usage:
        telemetry = TelemetryDispatcher(InMemoryTelemetrySink())
        telemetry.submit(CacheRecord(tool_name="MARKET_STATUS", cache_hit=True))
        ...
        await telemetry.drain()  # on shutdown
    """

    def __init__(self, sink: TelemetrySink | None = None):
        self.sink = sink or NullTelemetrySink()
        self._pending: set[asyncio.Task] = set()
        self.delivered = 0
        self.dropped = 0

    def submit(self, record: TelemetryRecord) -> None:
        """Queue a record for delivery. Never raises."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): nothing to schedule on
            self.dropped += 1
            logger.debug("Telemetry %s dropped: no running event loop", record.kind)
            return

        task = loop.create_task(self._deliver(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, record: TelemetryRecord) -> None:
        try:
            await self.sink.write(record)
            self.delivered += 1
        except Exception as e:
            self.dropped += 1
            TELEMETRY_DROPPED.labels(kind=record.kind).inc()
            logger.warning("Telemetry %s write failed: %s", record.kind, e)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all in-flight deliveries."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self.sink.close()
