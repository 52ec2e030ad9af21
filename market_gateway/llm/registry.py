"""Model capability registry.

Used for provider routing, tool-format selection, limits and cost estimates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ProviderName(str, Enum):
    ANTHROPIC = "anthropic"
    DEEPSEEK = "deepseek"


class ToolFormat(str, Enum):
    ANTHROPIC = "anthropic"  # top-level input_schema
    OPENAI = "openai"  # {"type": "function", "function": {..., "parameters"}}


@dataclass(frozen=True)
class ModelInfo:
    id: str
    provider: ProviderName
    name: str
    context_window: int
    max_output: int
    tool_format: ToolFormat
    cost_per_1m_input: float
    cost_per_1m_output: float
    supports_streaming: bool = True
    supports_tools: bool = True
    supports_caching: bool = False  # explicit prompt caching
    supports_prefix_caching: bool = False  # automatic prefix caching
    supports_vision: bool = False
    tier: str = "free"
    best_for: tuple[str, ...] = field(default_factory=tuple)


MODEL_REGISTRY: dict[str, ModelInfo] = {
    "claude-3-5-haiku-20241022": ModelInfo(
        id="claude-3-5-haiku-20241022",
        provider=ProviderName.ANTHROPIC,
        name="Claude 3.5 Haiku",
        context_window=200_000,
        max_output=4096,
        tool_format=ToolFormat.ANTHROPIC,
        cost_per_1m_input=0.80,
        cost_per_1m_output=4.00,
        supports_caching=True,
        supports_vision=True,
        best_for=("quick-tasks", "parsing", "classification", "simple-chat"),
    ),
    "claude-sonnet-4-5-20250929": ModelInfo(
        id="claude-sonnet-4-5-20250929",
        provider=ProviderName.ANTHROPIC,
        name="Claude Sonnet 4.5",
        context_window=200_000,
        max_output=8192,
        tool_format=ToolFormat.ANTHROPIC,
        cost_per_1m_input=3.00,
        cost_per_1m_output=15.00,
        supports_caching=True,
        supports_vision=True,
        tier="pro",
        best_for=("complex-analysis", "reasoning", "writing", "multi-step"),
    ),
    "deepseek-chat": ModelInfo(
        id="deepseek-chat",
        provider=ProviderName.DEEPSEEK,
        name="DeepSeek Chat",
        context_window=64_000,
        max_output=4096,
        tool_format=ToolFormat.OPENAI,
        cost_per_1m_input=0.14,
        cost_per_1m_output=0.28,
        supports_prefix_caching=True,
        best_for=("general-chat", "cost-efficient", "high-volume"),
    ),
    "deepseek-reasoner": ModelInfo(
        id="deepseek-reasoner",
        provider=ProviderName.DEEPSEEK,
        name="DeepSeek Reasoner",
        context_window=64_000,
        max_output=8192,
        tool_format=ToolFormat.OPENAI,
        cost_per_1m_input=0.55,
        cost_per_1m_output=2.19,
        supports_prefix_caching=True,
        tier="pro",
        best_for=("analysis", "reasoning", "multi-step", "complex-queries"),
    ),
}

_DEFAULT_CONTEXT_WINDOW = 4096
_DEFAULT_MAX_OUTPUT = 1024


def get_model(model_id: str) -> ModelInfo | None:
    return MODEL_REGISTRY.get(model_id)


def is_valid_model(model_id: str) -> bool:
    return model_id in MODEL_REGISTRY


def get_models_by_provider(provider: ProviderName | str) -> list[ModelInfo]:
    return [m for m in MODEL_REGISTRY.values() if m.provider == provider]


def get_default_model(provider: ProviderName | str, tier: str = "free") -> ModelInfo | None:
    models = get_models_by_provider(provider)
    if tier == "pro":
        for m in models:
            if m.tier == "pro":
                return m
    for m in models:
        if m.tier == "free":
            return m
    return models[0] if models else None


def get_provider_name(model_id: str) -> ProviderName | None:
    model = get_model(model_id)
    return model.provider if model else None


def supports_tools(model_id: str) -> bool:
    model = get_model(model_id)
    return bool(model and model.supports_tools)


def get_tool_format(model_id: str) -> ToolFormat | None:
    model = get_model(model_id)
    if model is None or not model.supports_tools:
        return None
    return model.tool_format


def get_context_window(model_id: str) -> int:
    model = get_model(model_id)
    return model.context_window if model else _DEFAULT_CONTEXT_WINDOW


def get_max_output(model_id: str) -> int:
    model = get_model(model_id)
    return model.max_output if model else _DEFAULT_MAX_OUTPUT


def estimate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    """Cost in USD; 0.0 for unknown models."""
    model = get_model(model_id)
    if model is None:
        return 0.0
    return round(
        (input_tokens * model.cost_per_1m_input + output_tokens * model.cost_per_1m_output) / 1_000_000,
        6,
    )
