"""ProfileManager: the entry point the HTTP layer uses for profile context."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.llm_core import ConfigurationError, log_error
from src.profile_memory.background import BackgroundTaskRunner
from src.profile_memory.config import (
    CONTEXT_MIN_IMPORTANCE,
    DEFAULT_MAX_MESSAGES,
    DEFAULT_MEMORY_LIMIT,
    MemoryEngineConfig,
    ProfileStoreConfig,
    TraitEngineConfig,
)
from src.profile_memory.engine import MemoryEngine
from src.profile_memory.llm_client import ExtractionLLMClient
from src.profile_memory.models import (
    ConversationMessage,
    ProcessResult,
    Profile,
    ProfileContext,
    StoredMessage,
    TraitSchema,
    TraitUpdate,
)
from src.profile_memory.service.profile_store import ProfileStore
from src.profile_memory.traits.engine import TraitEngine
from src.profile_memory.traits.schema import load_trait_schemas

from .config import Settings
from .errors import ProfileNotFoundError

logger = logging.getLogger(__name__)

EXPORT_LIMIT = 1000


class ProfileManager:
    """Composes the trait and memory engines into request-time injection text and
    post-response conversation processing."""

    def __init__(
        self,
        store: ProfileStore,
        trait_engine: TraitEngine,
        memory_engine: MemoryEngine,
        *,
        background: Optional[BackgroundTaskRunner] = None,
        trait_extraction_enabled: bool = True,
        memory_extraction_enabled: bool = True,
        max_messages_per_profile: int = DEFAULT_MAX_MESSAGES,
        inject_memories: bool = False,
        llm_client: Optional[ExtractionLLMClient] = None,
    ) -> None:
        if isinstance(max_messages_per_profile, bool) or not isinstance(max_messages_per_profile, int):
            raise ConfigurationError("max_messages_per_profile must be an integer")
        if max_messages_per_profile < 0:
            raise ConfigurationError("max_messages_per_profile must be >= 0 (0 disables retention)")

        self._store = store
        self._traits = trait_engine
        self._memory = memory_engine
        self._background = background or BackgroundTaskRunner()
        self._trait_extraction_enabled = trait_extraction_enabled
        self._memory_extraction_enabled = memory_extraction_enabled
        self._max_messages = max_messages_per_profile
        self._inject_memories = inject_memories
        self._llm = llm_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: Optional[ProfileStore] = None,
        llm_client: Optional[ExtractionLLMClient] = None,
    ) -> "ProfileManager":
        store = store or ProfileStore(ProfileStoreConfig(sqlite_path=settings.db_path))
        llm = llm_client or ExtractionLLMClient(settings.llm)
        background = BackgroundTaskRunner()

        default_schemas: Optional[List[TraitSchema]] = None
        if settings.traits.schema_path is not None:
            default_schemas = load_trait_schemas(settings.traits.schema_path)
            logger.info("Loaded %d trait schemas from %s", len(default_schemas), settings.traits.schema_path)

        trait_engine = TraitEngine(
            store,
            TraitEngineConfig(llm=settings.llm, extraction_enabled=settings.traits.extraction_enabled),
            llm_client=llm,
            default_schemas=default_schemas,
        )
        memory_engine = MemoryEngine(
            store,
            MemoryEngineConfig(
                llm=settings.llm,
                extraction_enabled=settings.memory.extraction_enabled,
                summarization_interval=settings.memory.summarization_interval,
            ),
            llm_client=llm,
            background=background,
        )
        return cls(
            store,
            trait_engine,
            memory_engine,
            background=background,
            trait_extraction_enabled=settings.traits.extraction_enabled,
            memory_extraction_enabled=settings.memory.extraction_enabled,
            max_messages_per_profile=settings.memory.max_messages_per_profile,
            inject_memories=settings.inject_memories,
            llm_client=llm,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_trait_engine(self) -> TraitEngine:
        return self._traits

    def get_memory_engine(self) -> MemoryEngine:
        return self._memory

    @property
    def background(self) -> BackgroundTaskRunner:
        return self._background

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_or_create_profile(self, external_id: str) -> Profile:
        return await self._store.get_or_create_profile(external_id)

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        return await self._store.get_profile(profile_id)

    async def find_profile(self, id_or_external_id: str) -> Optional[Profile]:
        """Look a profile up by internal id, then by external id."""
        profile = await self._store.get_profile(id_or_external_id)
        if profile is None:
            profile = await self._store.get_profile_by_external_id(id_or_external_id)
        return profile

    async def list_profiles(
        self,
        limit: int = 20,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> Tuple[List[Profile], int]:
        return await self._store.list_profiles(limit, offset, search)

    async def delete_profile(self, profile_id: str) -> bool:
        """Delete the profile with its traits, memories and messages."""
        return await self._store.delete_profile(profile_id)

    # ------------------------------------------------------------------
    # Request-time context
    # ------------------------------------------------------------------

    async def build_context(self, profile_id: str, query: Optional[str] = None) -> ProfileContext:
        profile = await self.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)

        traits = await self._traits.get_traits(profile_id)
        memories = await self._memory.retrieve_memories(
            profile_id,
            query,
            limit=DEFAULT_MEMORY_LIMIT,
            min_importance=CONTEXT_MIN_IMPORTANCE,
        )
        summary = await self._memory.get_profile_summary(profile_id, traits, memories)
        return ProfileContext(profile=profile, traits=traits, recent_memories=memories, summary=summary)

    async def build_injection_text(
        self,
        profile_id: str,
        query: Optional[str] = None,
        schemas: Optional[Sequence[TraitSchema]] = None,
    ) -> str:
        """Text for the system prompt: summary, then trait lines, then (opt-in) memories."""
        context = await self.build_context(profile_id, query)
        parts: List[str] = []
        if context.summary:
            parts.append(f"## User Profile\n{context.summary}")

        trait_text = self._traits.build_injection_context(context.traits, schemas)
        if trait_text:
            parts.append(f"## User Attributes\n{trait_text}")

        if self._inject_memories and context.recent_memories:
            lines = "\n".join(f"- {m.content}" for m in context.recent_memories)
            parts.append(f"## Relevant Context\n{lines}")

        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def store_conversation(
        self,
        profile_id: str,
        messages: List[ConversationMessage],
        request_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> List[StoredMessage]:
        return await self._store.create_messages(
            profile_id,
            [{"role": m.role, "content": m.content} for m in messages],
            request_id,
            model,
        )

    async def process_conversation(
        self,
        profile_id: str,
        messages: List[ConversationMessage],
        *,
        request_id: Optional[str] = None,
        model: Optional[str] = None,
        skip_extraction: bool = False,
        custom_trait_schemas: Optional[Sequence[TraitSchema]] = None,
    ) -> ProcessResult:
        """Store the messages, then extract traits and memories from them concurrently."""
        stored = await self.store_conversation(profile_id, messages, request_id, model)
        message_ids = [m.id for m in stored]
        conversation = [
            ConversationMessage(role=m.role, content=m.content, id=stored_id)
            for m, stored_id in zip(messages, message_ids)
        ]

        traits_extracted: List[TraitUpdate] = []
        if not skip_extraction:
            traits_extracted, _ = await asyncio.gather(
                self._extract_traits(profile_id, conversation, custom_trait_schemas, message_ids),
                self._extract_memories(profile_id, conversation),
            )

        await self.enforce_message_retention(profile_id)
        return ProcessResult(stored=True, traits_extracted=traits_extracted)

    async def process_conversation_background(
        self,
        profile_id: str,
        messages: List[ConversationMessage],
        **kwargs: Any,
    ) -> None:
        """Run ``process_conversation`` after a response was sent; failures are only logged."""
        try:
            await self.process_conversation(profile_id, messages, **kwargs)
        except Exception as error:
            log_error(
                "ProfileManager",
                error,
                profile_id=profile_id,
                message_count=len(messages),
                operation="process_conversation",
            )

    async def get_recent_messages(self, profile_id: str, limit: int = 20) -> List[StoredMessage]:
        return await self._store.get_recent_messages(profile_id, limit)

    async def enforce_message_retention(self, profile_id: str) -> int:
        """Trim the oldest messages beyond the per-profile cap; refresh the summary if any went."""
        if self._max_messages <= 0:
            return 0
        count = await self._store.count_messages(profile_id)
        if count <= self._max_messages:
            return 0

        deleted = await self._store.delete_old_messages(profile_id, self._max_messages)
        if deleted > 0:
            logger.info("Trimmed %d old messages for profile %s", deleted, profile_id)
            self._background.submit(
                self.regenerate_summary(profile_id),
                description=f"summary regeneration for profile {profile_id}",
            )
        return deleted

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def update_summary(self, profile_id: str, summary: str) -> Optional[Profile]:
        """Manual override; bumps the summary version."""
        existing = await self._store.get_profile(profile_id)
        if existing is None:
            return None
        return await self._store.update_summary(profile_id, summary, existing.summary_version + 1)

    async def regenerate_summary(self, profile_id: str) -> str:
        traits = await self._traits.get_traits(profile_id)
        memories = await self._memory.get_recent_memories(profile_id, DEFAULT_MEMORY_LIMIT * 2)
        return await self._memory.regenerate_summary(profile_id, traits, memories)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_profile(self, profile_id: str) -> Dict[str, Any]:
        profile = await self.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        traits = await self._traits.get_traits(profile_id)
        memories = await self._memory.get_recent_memories(profile_id, EXPORT_LIMIT)
        messages = await self.get_recent_messages(profile_id, EXPORT_LIMIT)
        return {
            "profile": profile.model_dump(mode="json"),
            "traits": [t.model_dump(mode="json") for t in traits],
            "memories": [m.model_dump(mode="json") for m in memories],
            "messages": [m.model_dump(mode="json") for m in reversed(messages)],
        }

    async def aclose(self) -> None:
        await self._background.drain()
        if self._llm is not None:
            await self._llm.aclose()
        self._store.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _extract_traits(
        self,
        profile_id: str,
        conversation: List[ConversationMessage],
        schemas: Optional[Sequence[TraitSchema]],
        message_ids: List[str],
    ) -> List[TraitUpdate]:
        if not self._trait_extraction_enabled:
            return []
        try:
            updates = await self._traits.extract_and_apply(profile_id, conversation, schemas, message_ids)
        except Exception as error:
            log_error(
                "ProfileManager",
                error,
                profile_id=profile_id,
                message_count=len(conversation),
                operation="trait_extraction",
            )
            return []
        if updates:
            logger.info(
                "Extracted traits for profile %s: %s",
                profile_id,
                [(u.key, u.value) for u in updates],
            )
        return updates

    async def _extract_memories(self, profile_id: str, conversation: List[ConversationMessage]) -> None:
        if not self._memory_extraction_enabled:
            return
        await self._memory.process_messages(profile_id, conversation)


__all__ = ["ProfileManager"]
