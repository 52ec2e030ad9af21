"""LLM layer: canonical messages, model registry, vendor providers."""
