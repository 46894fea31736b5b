from __future__ import annotations

import os

from .models import LLMProvider

DEFAULT_MODELS: dict[str, str] = {
    LLMProvider.OPENAI.value: "gpt-4",
    LLMProvider.ANTHROPIC.value: "claude-opus-4-1-20250805",
    LLMProvider.GOOGLE.value: "gemini-pro",
    LLMProvider.XAI.value: "grok-beta",
}


def get_env_key(provider: str) -> str:
    return f"ENSEMBLE_{provider.upper().replace('-', '_')}_MODEL"


def get_model_from_env(provider: str) -> str | None:
    return os.getenv(get_env_key(provider))


def resolve_model(provider: str, requested: str | None = None) -> str:
    """Pick the model for a provider: explicit request, then env, then default."""
    if requested:
        return requested

    env_value = get_model_from_env(provider)
    if env_value:
        return env_value

    return DEFAULT_MODELS.get(provider.lower(), DEFAULT_MODELS[LLMProvider.OPENAI.value])


def resolve_model_with_source(provider: str) -> tuple[str, str]:
    env_value = get_model_from_env(provider)
    if env_value:
        return env_value, "env"

    default = DEFAULT_MODELS.get(provider.lower(), DEFAULT_MODELS[LLMProvider.OPENAI.value])
    return default, "default"


def get_all_configs() -> dict[str, dict[str, str]]:
    result = {}
    for provider in sorted(DEFAULT_MODELS):
        model, source = resolve_model_with_source(provider)
        result[provider] = {"model": model, "source": source}
    return result
