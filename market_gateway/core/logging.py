"""Centralized logging configuration.

Tool and provider code attaches call context to records through
`extra=log_context(...)`. Both formatters render those fields: the JSON
formatter as top-level keys, the text formatter as a `[tool=... key=...]`
suffix.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from market_gateway.core.config import settings

# Record attribute -> short label used by the text formatter
CONTEXT_FIELDS = {
    "tool_name": "tool",
    "key_index": "key",
    "provider": "provider",
    "model": "model",
}


def log_context(**fields) -> dict:
    """Build an `extra` dict for logger calls, dropping unknown or empty fields."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
    return {k: v for k, v in fields.items() if v is not None}


def _record_context(record: logging.LogRecord) -> dict:
    return {attr: getattr(record, attr) for attr in CONTEXT_FIELDS if hasattr(record, attr)}


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_record_context(record),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


class ContextTextFormatter(logging.Formatter):
    """Human-readable formatter that appends tool/key/provider context."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = _record_context(record)
        if not context:
            return text
        suffix = " ".join(f"{CONTEXT_FIELDS[attr]}={value}" for attr, value in context.items())
        return f"{text} [{suffix}]"


def setup_logging() -> None:
    """Configure the root logger. Call once at process startup, after validate_settings()."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ContextTextFormatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("clickhouse_connect").setLevel(logging.WARNING)
