from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

ProviderName = Literal["openai", "anthropic", "custom"]

PROVIDER_NAMES: tuple[str, ...] = ("openai", "anthropic", "custom")
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MODEL = "gpt-4.1-mini"


@dataclass
class ProviderConfig:
    """Connection settings for one upstream LLM API."""

    provider: ProviderName = "openai"
    api_key: str = ""
    base_url: str | None = None
    model: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


def _parse_provider(raw: str | None) -> ProviderName:
    value = (raw or "").strip().lower()
    if value in PROVIDER_NAMES:
        return value  # type: ignore[return-value]
    return "openai"


def provider_config_from_env(prefix: str = "LLM", *, default_timeout_s: float = DEFAULT_TIMEOUT_S) -> ProviderConfig:
    """Build a ProviderConfig from ``<PREFIX>_*`` environment variables.

    The API key falls back to the vendor-specific ``OPENAI_API_KEY`` or
    ``ANTHROPIC_API_KEY`` when ``<PREFIX>_API_KEY`` is unset.
    """
    provider = _parse_provider(os.getenv(f"{prefix}_PROVIDER"))
    api_key = os.getenv(f"{prefix}_API_KEY") or ""
    if not api_key:
        fallback = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
        api_key = os.getenv(fallback) or ""

    timeout_s = default_timeout_s
    raw_timeout = os.getenv(f"{prefix}_TIMEOUT_SECONDS")
    if raw_timeout:
        try:
            timeout_s = float(raw_timeout)
        except ValueError:
            timeout_s = default_timeout_s

    return ProviderConfig(
        provider=provider,
        api_key=api_key,
        base_url=os.getenv(f"{prefix}_BASE_URL") or None,
        model=os.getenv(f"{prefix}_MODEL") or None,
        timeout_s=timeout_s,
    )


__all__ = [
    "DEFAULT_MODEL",
    "DEFAULT_TIMEOUT_S",
    "PROVIDER_NAMES",
    "ProviderConfig",
    "ProviderName",
    "provider_config_from_env",
]
