"""LLM providers and the model -> provider factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing

from market_gateway.llm.providers.anthropic import AnthropicProvider
from market_gateway.llm.providers.base import BaseProvider
from market_gateway.llm.providers.deepseek import DeepSeekProvider
from market_gateway.llm.registry import ProviderName, get_provider_name
from market_gateway.llm.types import CompletionOptions, CompletionResult, ProviderConfigError, StreamEvent

PROVIDER_REGISTRY: dict[ProviderName, type[BaseProvider]] = {
    ProviderName.ANTHROPIC: AnthropicProvider,
    ProviderName.DEEPSEEK: DeepSeekProvider,
}


def get_provider_by_name(name: ProviderName | str, **kwargs) -> BaseProvider:
    """Factory: provider instance for a vendor name."""
    try:
        cls = PROVIDER_REGISTRY[ProviderName(name)]
    except (KeyError, ValueError):
        raise ProviderConfigError(f"No provider registered for: {name}") from None
    return cls(**kwargs)


def get_provider_for_model(model_id: str, **kwargs) -> BaseProvider:
    """Factory: provider instance that serves a model id."""
    provider = get_provider_name(model_id)
    if provider is None:
        raise ProviderConfigError(f"Unknown model: {model_id}")
    return get_provider_by_name(provider, **kwargs)


async def create_unified_stream(options: CompletionOptions, **kwargs) -> AsyncIterator[StreamEvent]:
    """Stream from whichever provider serves options.model."""
    provider = get_provider_for_model(options.model, **kwargs)
    async with aclosing(provider.create_stream(options)) as stream:
        async for event in stream:
            yield event


async def create_unified_completion(options: CompletionOptions, **kwargs) -> CompletionResult:
    provider = get_provider_for_model(options.model, **kwargs)
    return await provider.create_completion(options)


__all__ = [
    "PROVIDER_REGISTRY",
    "AnthropicProvider",
    "BaseProvider",
    "DeepSeekProvider",
    "create_unified_completion",
    "create_unified_stream",
    "get_provider_by_name",
    "get_provider_for_model",
]
