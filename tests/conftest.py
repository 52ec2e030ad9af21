from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from market_gateway.core.config import Settings


class FakeClock:
    """Settable clock returning epoch milliseconds."""

    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now_ms += int(minutes * 60_000 + seconds * 1000)


class FakeUtcClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2025, 3, 10, 15, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "alpha_vantage_api_key_1": "key-a",
        "alpha_vantage_api_key_2": "key-b",
        "mcp_server_url": "https://mcp.test/mcp",
        "tool_base_backoff_seconds": 0.0,
        "tool_max_backoff_seconds": 0.0,
        "anthropic_api_key": "sk-ant-test",
        "deepseek_api_key": "sk-ds-test",
        "telemetry_backend": "memory",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def rpc_result_text(text: str, request_id: int = 1) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": {"content": [{"type": "text", "text": text}]}}


def rpc_error(code: int, message: str, request_id: int = 1) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def sse_body(*events: dict[str, Any], done: bool = False) -> bytes:
    lines = [f"data: {json.dumps(e)}\n\n" for e in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()
