"""Tool definition conversion between Anthropic and OpenAI shapes."""

from __future__ import annotations

import logging
from typing import Any

from market_gateway.llm.registry import ToolFormat, get_tool_format

logger = logging.getLogger(__name__)


def _empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


def detect_tool_format(tool: dict[str, Any]) -> ToolFormat:
    if "input_schema" in tool:
        return ToolFormat.ANTHROPIC
    if "function" in tool or tool.get("type") == "function" or "parameters" in tool:
        return ToolFormat.OPENAI
    return ToolFormat.ANTHROPIC


def anthropic_to_openai(tool: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool["name"],
            "description": tool.get("description", ""),
            "parameters": tool.get("input_schema") or _empty_schema(),
        },
    }


def openai_to_anthropic(tool: dict[str, Any]) -> dict[str, Any]:
    func = tool.get("function") or tool
    return {
        "name": func["name"],
        "description": func.get("description", ""),
        "input_schema": func.get("parameters") or _empty_schema(),
    }


def transform_tools_for_model(tools: list[dict[str, Any]] | None, model_id: str) -> list[dict[str, Any]] | None:
    """Convert tool definitions to the target model's format.

    Returns None when there are no tools or the model cannot call tools.
    """
    if not tools:
        return None

    target = get_tool_format(model_id)
    if target is None:
        logger.debug("Model %s does not support tools; dropping %d definitions", model_id, len(tools))
        return None

    converted = []
    for tool in tools:
        source = detect_tool_format(tool)
        if source == target:
            converted.append(tool)
        elif target == ToolFormat.OPENAI:
            converted.append(anthropic_to_openai(tool))
        else:
            converted.append(openai_to_anthropic(tool))
    return converted
