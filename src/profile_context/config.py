"""Service settings read from the environment (and a ``.env`` file when present)."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from src.llm_core import ConfigurationError, ProviderConfig, provider_config_from_env
from src.profile_memory.config import (
    DEFAULT_MAX_MESSAGES,
    DEFAULT_SUMMARIZATION_INTERVAL,
    SQLITE_PATH,
)

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class MemorySettings(BaseModel):
    max_messages_per_profile: int = DEFAULT_MAX_MESSAGES
    extraction_enabled: bool = True
    summarization_interval: float = Field(
        default=DEFAULT_SUMMARIZATION_INTERVAL,
        description="Minutes a cached profile summary stays fresh.",
    )


class TraitSettings(BaseModel):
    extraction_enabled: bool = True
    schema_path: Optional[Path] = Field(
        default=None,
        description="JSON file whose trait schemas replace the built-in defaults.",
    )
    allow_request_override: bool = True


class Settings(BaseModel):
    llm: ProviderConfig = Field(default_factory=ProviderConfig)
    upstream: ProviderConfig = Field(default_factory=ProviderConfig)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    traits: TraitSettings = Field(default_factory=TraitSettings)
    db_path: Path = SQLITE_PATH
    log_level: str = "INFO"
    inject_memories: bool = False


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning("Ignoring unrecognised boolean %s=%r", name, raw)
    return default


def _env_number(name: str, default: float, cast: type = float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def load_settings() -> Settings:
    """Build Settings from the process environment."""
    try:  # Best-effort .env loading
        from dotenv import load_dotenv

        load_dotenv()
    except Exception:  # pragma: no cover - optional at runtime
        pass

    schema_path = os.getenv("TRAIT_SCHEMA_PATH")
    db_path = os.getenv("PROFILE_DB_PATH")
    return Settings(
        llm=provider_config_from_env("LLM"),
        upstream=provider_config_from_env("UPSTREAM"),
        memory=MemorySettings(
            max_messages_per_profile=int(_env_number("MAX_MESSAGES_PER_PROFILE", DEFAULT_MAX_MESSAGES, int)),
            extraction_enabled=_env_bool("MEMORY_EXTRACTION_ENABLED", True),
            summarization_interval=_env_number("SUMMARIZATION_INTERVAL_MINUTES", DEFAULT_SUMMARIZATION_INTERVAL),
        ),
        traits=TraitSettings(
            extraction_enabled=_env_bool("TRAIT_EXTRACTION_ENABLED", True),
            schema_path=Path(schema_path) if schema_path else None,
            allow_request_override=_env_bool("ALLOW_TRAIT_OVERRIDE", True),
        ),
        db_path=Path(db_path) if db_path else SQLITE_PATH,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        inject_memories=_env_bool("INJECT_MEMORIES", False),
    )


__all__ = ["MemorySettings", "Settings", "TraitSettings", "load_settings"]
