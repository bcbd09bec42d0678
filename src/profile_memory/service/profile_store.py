from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..config import DEFAULT_DECAY_FACTOR, DEFAULT_IMPORTANCE, DEFAULT_TRAIT_CONFIDENCE, ProfileStoreConfig
from ..models import Memory, MemoryCandidate, Profile, StoredMessage, Trait
from ..persistence.sqlite import MemoryRow, MessageRow, ProfileRow, SQLiteProfileStore, TraitRow


class ProfileStore:
    """Async service over the SQLite profile store.

    Every call runs the blocking SQLite work in a worker thread so the event loop
    stays free while the database is busy. Rows come back as pydantic models.
    """

    def __init__(
        self,
        config: Optional[ProfileStoreConfig] = None,
        *,
        backend: Optional[SQLiteProfileStore] = None,
    ) -> None:
        self.config = config or ProfileStoreConfig()
        if backend is None:
            self.config.ensure_directories()
            backend = SQLiteProfileStore(self.config.sqlite_path)
        self._db = backend

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_or_create_profile(self, external_id: str) -> Profile:
        if not external_id:
            raise ValueError("external_id is required")
        row = await asyncio.to_thread(self._db.get_or_create_profile, external_id)
        return self._to_profile(row)

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        row = await asyncio.to_thread(self._db.get_profile, profile_id)
        return self._to_profile(row) if row is not None else None

    async def get_profile_by_external_id(self, external_id: str) -> Optional[Profile]:
        row = await asyncio.to_thread(self._db.get_profile_by_external_id, external_id)
        return self._to_profile(row) if row is not None else None

    async def update_summary(
        self,
        profile_id: str,
        summary: Optional[str],
        summary_version: int,
    ) -> Optional[Profile]:
        row = await asyncio.to_thread(self._db.update_profile_summary, profile_id, summary, summary_version)
        return self._to_profile(row) if row is not None else None

    async def list_profiles(
        self,
        limit: int = 20,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> Tuple[List[Profile], int]:
        rows, total = await asyncio.to_thread(self._db.list_profiles, limit, offset, search)
        return [self._to_profile(r) for r in rows], total

    async def delete_profile(self, profile_id: str) -> bool:
        return await asyncio.to_thread(self._db.delete_profile, profile_id)

    # ------------------------------------------------------------------
    # Traits
    # ------------------------------------------------------------------

    async def get_traits(self, profile_id: str) -> List[Trait]:
        rows = await asyncio.to_thread(self._db.list_traits, profile_id)
        return [self._to_trait(r) for r in rows]

    async def upsert_trait(
        self,
        profile_id: str,
        key: str,
        value: Any,
        *,
        category: Optional[str],
        value_type: str,
        confidence: float,
        source: str,
        source_message_ids: Optional[Iterable[str]] = None,
    ) -> Trait:
        row = await asyncio.to_thread(
            lambda: self._db.upsert_trait(
                profile_id,
                key,
                value,
                category=category,
                value_type=value_type,
                confidence=confidence,
                source=source,
                source_message_ids=source_message_ids,
            )
        )
        return self._to_trait(row)

    async def delete_trait(self, profile_id: str, key: str) -> bool:
        return await asyncio.to_thread(self._db.delete_trait, profile_id, key)

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def find_memory_by_content(self, profile_id: str, content: str) -> Optional[Memory]:
        row = await asyncio.to_thread(self._db.find_memory_by_content, profile_id, content)
        return self._to_memory(row) if row is not None else None

    async def create_memories(self, profile_id: str, candidates: List[MemoryCandidate]) -> List[Memory]:
        payload: List[Dict[str, Any]] = [c.model_dump() for c in candidates]
        rows = await asyncio.to_thread(self._db.insert_memories, profile_id, payload)
        return [self._to_memory(r) for r in rows]

    async def get_memories(
        self,
        profile_id: str,
        *,
        limit: int,
        memory_type: Optional[str] = None,
        min_importance: float = 0.0,
    ) -> List[Memory]:
        rows = await asyncio.to_thread(self._db.list_memories, profile_id, limit, memory_type, min_importance)
        return [self._to_memory(r) for r in rows]

    async def get_recent_memories(self, profile_id: str, limit: int) -> List[Memory]:
        rows = await asyncio.to_thread(self._db.recent_memories, profile_id, limit)
        return [self._to_memory(r) for r in rows]

    async def touch_memory(self, memory_id: str) -> None:
        await asyncio.to_thread(self._db.touch_memory, memory_id)

    async def delete_memory(self, profile_id: str, memory_id: str) -> bool:
        return await asyncio.to_thread(self._db.delete_memory, profile_id, memory_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_messages(
        self,
        profile_id: str,
        messages: List[Dict[str, str]],
        request_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> List[StoredMessage]:
        rows = await asyncio.to_thread(self._db.insert_messages, profile_id, messages, request_id, model)
        return [self._to_message(r) for r in rows]

    async def count_messages(self, profile_id: str) -> int:
        return await asyncio.to_thread(self._db.count_messages, profile_id)

    async def delete_old_messages(self, profile_id: str, keep: int) -> int:
        return await asyncio.to_thread(self._db.delete_old_messages, profile_id, keep)

    async def get_recent_messages(self, profile_id: str, limit: int = 20) -> List[StoredMessage]:
        rows = await asyncio.to_thread(self._db.recent_messages, profile_id, limit)
        return [self._to_message(r) for r in rows]

    def close(self) -> None:
        self._db.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_profile(row: ProfileRow) -> Profile:
        return Profile(
            id=row.id,
            external_id=row.external_id,
            summary=row.summary,
            summary_version=row.summary_version,
            summary_updated_at=row.summary_updated_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_trait(row: TraitRow) -> Trait:
        return Trait(
            id=row.id,
            profile_id=row.profile_id,
            key=row.key,
            category=row.category,
            value_type=row.value_type,
            value=row.value,
            confidence=row.confidence if row.confidence is not None else DEFAULT_TRAIT_CONFIDENCE,
            source=row.source or "extracted",
            source_message_ids=row.source_message_ids or [],
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_memory(row: MemoryRow) -> Memory:
        return Memory(
            id=row.id,
            profile_id=row.profile_id,
            content=row.content,
            type=row.type,
            importance=row.importance if row.importance is not None else DEFAULT_IMPORTANCE,
            decay_factor=row.decay_factor if row.decay_factor is not None else DEFAULT_DECAY_FACTOR,
            source_message_ids=row.source_message_ids or [],
            created_at=row.created_at,
            last_accessed_at=row.last_accessed_at,
        )

    @staticmethod
    def _to_message(row: MessageRow) -> StoredMessage:
        return StoredMessage(
            id=row.id,
            profile_id=row.profile_id,
            role=row.role,
            content=row.content,
            request_id=row.request_id,
            model=row.model,
            processed=row.processed,
            created_at=row.created_at,
        )


__all__ = ["ProfileStore"]
