from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from src.llm_core import ProviderConfig

# Align with main_config: profile data under BASE_DIR/db/profiles/
try:
    from main_config import PROFILE_DB_PATH as _PROFILE_DB_PATH_STR

    SQLITE_PATH = Path(_PROFILE_DB_PATH_STR)
except ImportError:
    # Fallback: db/profiles relative to the repository root
    SQLITE_PATH = (
        Path(__file__).resolve().parent.parent.parent / "db" / "profiles" / "profiles.db"
    )

# Memory retrieval
DEFAULT_MEMORY_LIMIT = 10
DEFAULT_MIN_IMPORTANCE = 0.1
CONTEXT_MIN_IMPORTANCE = 0.3
DEFAULT_IMPORTANCE = 0.5
DEFAULT_DECAY_FACTOR = 1.0

# Traits
DEFAULT_TRAIT_CONFIDENCE = 0.5
INJECTION_CONFIDENCE_MULTIPLIER = 0.9

# Summaries
DEFAULT_SUMMARIZATION_INTERVAL = 60  # minutes
SUMMARY_TOP_MEMORIES = 10
SUMMARY_MIN_TRAIT_CONFIDENCE = 0.5

# Message retention
DEFAULT_MAX_MESSAGES = 1000

TRAIT_EXTRACTION_TIMEOUT_S = 15.0
MEMORY_LLM_TIMEOUT_S = 30.0


class ProfileStoreConfig(BaseModel):
    """Configuration for the profile database."""

    sqlite_path: Path = Field(
        default=SQLITE_PATH,
        description="Path to the SQLite database file for profiles, traits, memories and messages.",
    )

    def ensure_directories(self) -> None:
        """Create required directories if they do not exist."""
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


@dataclass
class TraitEngineConfig:
    """Configuration for trait extraction."""

    llm: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(timeout_s=TRAIT_EXTRACTION_TIMEOUT_S)
    )
    extraction_enabled: bool = True
    # Placeholders: {{schemas}}, {{current_traits}}, {{conversation}}
    custom_prompt: Optional[str] = None


@dataclass
class MemoryEngineConfig:
    """Configuration for memory extraction and profile summaries."""

    llm: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(timeout_s=MEMORY_LLM_TIMEOUT_S)
    )
    extraction_enabled: bool = True
    summarization_interval: float = DEFAULT_SUMMARIZATION_INTERVAL
    # Placeholder: {{conversation}}
    custom_extraction_prompt: Optional[str] = None
    # Placeholders: {{traits}}, {{memories}}
    custom_summary_prompt: Optional[str] = None


__all__ = [
    "CONTEXT_MIN_IMPORTANCE",
    "DEFAULT_DECAY_FACTOR",
    "DEFAULT_IMPORTANCE",
    "DEFAULT_MAX_MESSAGES",
    "DEFAULT_MEMORY_LIMIT",
    "DEFAULT_MIN_IMPORTANCE",
    "DEFAULT_SUMMARIZATION_INTERVAL",
    "DEFAULT_TRAIT_CONFIDENCE",
    "INJECTION_CONFIDENCE_MULTIPLIER",
    "MemoryEngineConfig",
    "ProfileStoreConfig",
    "SQLITE_PATH",
    "SUMMARY_MIN_TRAIT_CONFIDENCE",
    "SUMMARY_TOP_MEMORIES",
    "TraitEngineConfig",
]
