from __future__ import annotations

import logging
import math
from typing import List, Optional

from src.llm_core import ConfigurationError

from .background import BackgroundTaskRunner
from .config import DEFAULT_MEMORY_LIMIT, DEFAULT_MIN_IMPORTANCE, MemoryEngineConfig
from .extractor import MemoryExtractor
from .llm_client import ExtractionLLMClient
from .models import ConversationMessage, Memory, MemoryCandidate, MemoryType, Trait
from .retriever import MemoryRetriever
from .service.profile_store import ProfileStore
from .summarizer import ProfileSummarizer

logger = logging.getLogger(__name__)


def validate_summarization_interval(value: float) -> float:
    if not isinstance(value, (int, float)) or not math.isfinite(value) or value < 1:
        raise ConfigurationError(
            f"Invalid summarization_interval: {value}. Must be a positive number of minutes (>= 1)."
        )
    return float(value)


class MemoryEngine:
    """Memory extraction, deduplicated storage, retrieval and profile summaries."""

    def __init__(
        self,
        store: ProfileStore,
        config: Optional[MemoryEngineConfig] = None,
        *,
        llm_client: Optional[ExtractionLLMClient] = None,
        background: Optional[BackgroundTaskRunner] = None,
    ) -> None:
        self._config = config or MemoryEngineConfig()
        interval = validate_summarization_interval(self._config.summarization_interval)

        self._store = store
        llm = llm_client or ExtractionLLMClient(self._config.llm)
        self.extractor = MemoryExtractor(
            llm,
            extraction_enabled=self._config.extraction_enabled,
            custom_prompt=self._config.custom_extraction_prompt,
        )
        self.retriever = MemoryRetriever(store, background)
        self.summarizer = ProfileSummarizer(
            store,
            llm,
            summarization_interval=interval,
            custom_prompt=self._config.custom_summary_prompt,
        )

    async def process_messages(
        self,
        profile_id: str,
        messages: List[ConversationMessage],
        *,
        skip_extraction: bool = False,
    ) -> List[Memory]:
        """Extract and store memories. Failures are logged, never raised."""
        if skip_extraction or not self._config.extraction_enabled:
            return []
        message_ids = [m.id for m in messages if m.id is not None]
        try:
            candidates = await self.extractor.extract(messages, message_ids)
            if not candidates:
                return []
            stored = await self.store_memory_candidates(profile_id, candidates)
            logger.info("Extracted %d memories for profile %s", len(candidates), profile_id)
            return stored
        except Exception:
            logger.exception("Failed to process messages for profile %s", profile_id)
            return []

    async def extract_memories_from_messages(
        self,
        messages: List[ConversationMessage],
        message_ids: Optional[List[str]] = None,
    ) -> List[MemoryCandidate]:
        return await self.extractor.extract(messages, message_ids)

    async def store_memory_candidates(self, profile_id: str, candidates: List[MemoryCandidate]) -> List[Memory]:
        """Insert candidates whose exact content is not already stored for the profile."""
        to_store: List[MemoryCandidate] = []
        seen: set[str] = set()
        for candidate in candidates:
            if candidate.content in seen:
                continue
            seen.add(candidate.content)
            existing = await self._store.find_memory_by_content(profile_id, candidate.content)
            if existing is not None:
                logger.debug("Skipping duplicate memory for profile %s: %.50s", profile_id, candidate.content)
                continue
            to_store.append(candidate)

        if not to_store:
            return []
        stored = await self._store.create_memories(profile_id, to_store)
        logger.info("Stored %d new memories for profile %s", len(stored), profile_id)
        return stored

    async def create_memory(
        self,
        profile_id: str,
        content: str,
        memory_type: MemoryType = "fact",
        importance: float = 0.5,
    ) -> Optional[Memory]:
        """Manually add a memory. Returns None when identical content already exists."""
        stored = await self.store_memory_candidates(
            profile_id,
            [MemoryCandidate(content=content, type=memory_type, importance=importance)],
        )
        return stored[0] if stored else None

    async def delete_memory(self, profile_id: str, memory_id: str) -> bool:
        return await self._store.delete_memory(profile_id, memory_id)

    async def retrieve_memories(
        self,
        profile_id: str,
        query: Optional[str] = None,
        *,
        limit: int = DEFAULT_MEMORY_LIMIT,
        memory_type: Optional[MemoryType] = None,
        min_importance: float = DEFAULT_MIN_IMPORTANCE,
    ) -> List[Memory]:
        return await self.retriever.retrieve(
            profile_id,
            query,
            limit=limit,
            memory_type=memory_type,
            min_importance=min_importance,
        )

    async def get_recent_memories(self, profile_id: str, limit: int = DEFAULT_MEMORY_LIMIT) -> List[Memory]:
        return await self.retriever.get_recent(profile_id, limit)

    async def get_profile_summary(self, profile_id: str, traits: List[Trait], memories: List[Memory]) -> str:
        return await self.summarizer.get_summary(profile_id, traits, memories)

    async def regenerate_summary(self, profile_id: str, traits: List[Trait], memories: List[Memory]) -> str:
        return await self.summarizer.regenerate(profile_id, traits, memories)


__all__ = ["MemoryEngine", "validate_summarization_interval"]
