from __future__ import annotations

import httpx

from .config import PROVIDER_NAMES, ProviderConfig, provider_config_from_env
from .errors import ConfigurationError
from .providers import AnthropicProvider, LLMProvider, OpenAIProvider


def create_provider(config: ProviderConfig, *, client: httpx.AsyncClient | None = None) -> LLMProvider:
    """Build the provider for ``config.provider``; ``custom`` speaks the OpenAI format."""
    if config.provider not in PROVIDER_NAMES:
        raise ConfigurationError(f"Unknown LLM provider: {config.provider}")
    if config.provider == "anthropic":
        return AnthropicProvider(config, client=client)
    return OpenAIProvider(config, client=client)


def create_provider_from_env(prefix: str = "LLM") -> LLMProvider:
    return create_provider(provider_config_from_env(prefix))
