"""Tool payload normalization.

Some tool backends answer with a Python-repr dict (`{'a': 'b', 'ok': True}`)
instead of JSON. normalize_tool_payload() parses that shape as a Python
literal and re-emits it as JSON, returning the untouched input whenever the
text is not a valid literal. Pure string-in/string-out; no transport or
retry concerns here.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_SINGLE_QUOTED_KEY = re.compile(r"'([^']*)':")
_SINGLE_QUOTED_VALUE = re.compile(r":\s*'([^']*)'")


def looks_like_python_dict(text: str) -> bool:
    """True for `{...}` text with single-quoted keys or values."""
    if not isinstance(text, str) or not text:
        return False
    trimmed = text.strip()
    if not trimmed.startswith("{") or "'" not in trimmed:
        return False
    return bool(_SINGLE_QUOTED_KEY.search(trimmed) or _SINGLE_QUOTED_VALUE.search(trimmed))


def python_dict_to_json(text: str) -> str:
    """Convert Python dict literal text to JSON. Raises ValueError if it is not a literal."""
    try:
        value = ast.literal_eval(text.strip())
        return json.dumps(value, ensure_ascii=False)
    except (SyntaxError, TypeError, RecursionError) as e:
        raise ValueError(f"not a JSON-compatible Python literal: {e}") from e


def normalize_tool_payload(text: str) -> str:
    """Return strict JSON for Python-dict text, else the input unchanged."""
    if not looks_like_python_dict(text):
        return text

    try:
        return python_dict_to_json(text)
    except ValueError as e:
        logger.warning("Python dict conversion failed, using original payload: %s", e)
        return text


def detect_stale_data(text: str, now: datetime | None = None) -> str | None:
    """Describe why a payload looks stale, or None.

    Looks at the latest trading day of quote payloads and at
    demo/delayed notices in an `Information` field.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    quote = data.get("Global Quote") or data.get("Quote Response")
    if isinstance(quote, dict):
        last_trade = quote.get("07. latest trading day") or quote.get("latest trading day")
        price = quote.get("05. price") or quote.get("price")
        if last_trade and price:
            try:
                trade_date = datetime.fromisoformat(str(last_trade))
            except ValueError:
                trade_date = None
            if trade_date is not None:
                if trade_date.tzinfo is None:
                    trade_date = trade_date.replace(tzinfo=timezone.utc)
                hours = ((now or datetime.now(timezone.utc)) - trade_date).total_seconds() / 3600
                if hours > 24:
                    return f"Data is {round(hours)} hours old (last trade: {last_trade})"
                if hours > 1:
                    return f"Data is {round(hours, 1)} hours old (last trade: {last_trade})"

    info = data.get("Information")
    if isinstance(info, str) and ("demo" in info.lower() or "delayed" in info.lower()):
        return info

    return None
