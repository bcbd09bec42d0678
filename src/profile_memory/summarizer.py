from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .config import (
    DEFAULT_SUMMARIZATION_INTERVAL,
    SUMMARY_MIN_TRAIT_CONFIDENCE,
    SUMMARY_TOP_MEMORIES,
)
from .llm_client import ExtractionLLMClient
from .models import Memory, Trait
from .prompts import (
    DEFAULT_SUMMARIZATION_PROMPT,
    SUMMARIZATION_PROMPT_FILE,
    SUMMARIZATION_SYSTEM_PROMPT,
    fill_template,
    load_prompt,
)
from .service.profile_store import ProfileStore
from .traits.schema import format_trait_value

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def build_basic_summary(traits: List[Trait]) -> str:
    """Deterministic summary used when the LLM is unavailable."""
    if not traits:
        return "New user profile"
    by_key = {t.key: t for t in traits}
    parts: List[str] = []

    name = by_key.get("name")
    parts.append(f"This is {name.value}." if name and name.value else "User profile:")

    style = by_key.get("communication_style")
    if style and style.value:
        parts.append(f"Prefers {style.value} communication.")

    expertise = by_key.get("expertise_level")
    if expertise and expertise.value:
        parts.append(f"Has {expertise.value} expertise.")

    interests = by_key.get("interests")
    if interests and isinstance(interests.value, list) and interests.value:
        parts.append(f"Interested in: {', '.join(str(v) for v in interests.value[:3])}.")

    return " ".join(parts)


class ProfileSummarizer:
    """Keeps one cached natural-language summary per profile.

    A cached summary younger than ``summarization_interval`` minutes is returned as is.
    Otherwise a new one is generated; only an LLM-generated summary is persisted (with
    ``summary_version`` + 1). The deterministic fallback is returned but never stored.
    """

    def __init__(
        self,
        store: ProfileStore,
        llm_client: ExtractionLLMClient,
        *,
        summarization_interval: float = DEFAULT_SUMMARIZATION_INTERVAL,
        custom_prompt: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._llm = llm_client
        self._interval = timedelta(minutes=summarization_interval)
        self._clock = clock
        self._prompt_template = custom_prompt or load_prompt(
            SUMMARIZATION_PROMPT_FILE, DEFAULT_SUMMARIZATION_PROMPT
        )

    async def get_summary(self, profile_id: str, traits: List[Trait], memories: List[Memory]) -> str:
        profile = await self._store.get_profile(profile_id)
        if profile is None:
            return ""
        if profile.summary and not self._is_stale(profile.summary_updated_at):
            return profile.summary
        return await self.regenerate(profile_id, traits, memories, previous_version=profile.summary_version)

    async def regenerate(
        self,
        profile_id: str,
        traits: List[Trait],
        memories: List[Memory],
        *,
        previous_version: Optional[int] = None,
    ) -> str:
        if not self._llm.is_configured:
            logger.warning("No LLM API key, using basic summary for profile %s", profile_id)
            return build_basic_summary(traits)

        try:
            prompt = self._build_prompt(traits, memories)
            summary = (await self._llm.complete(SUMMARIZATION_SYSTEM_PROMPT, prompt)).strip()
        except Exception:
            logger.exception("Failed to generate summary for profile %s", profile_id)
            return build_basic_summary(traits)
        if not summary:
            return build_basic_summary(traits)

        if previous_version is None:
            profile = await self._store.get_profile(profile_id)
            previous_version = profile.summary_version if profile else 0
        await self._store.update_summary(profile_id, summary, previous_version + 1)
        return summary

    def _is_stale(self, updated_at: Optional[datetime]) -> bool:
        if updated_at is None:
            return True
        return self._clock() - _as_aware(updated_at) >= self._interval

    def _build_prompt(self, traits: List[Trait], memories: List[Memory]) -> str:
        if traits:
            traits_text = "\n".join(
                f"- {t.key}: {format_trait_value(t.value)} (confidence: {t.confidence:.2f})"
                for t in traits
                if t.confidence >= SUMMARY_MIN_TRAIT_CONFIDENCE
            )
        else:
            traits_text = "No traits yet"

        top = sorted(memories, key=lambda m: m.score, reverse=True)[:SUMMARY_TOP_MEMORIES]
        memories_text = "\n".join(f"- [{m.type}] {m.content}" for m in top) if top else "No memories yet"

        return fill_template(self._prompt_template, traits=traits_text, memories=memories_text)


__all__ = ["ProfileSummarizer", "build_basic_summary"]
