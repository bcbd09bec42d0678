from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .background import BackgroundTaskRunner
from .config import DEFAULT_MEMORY_LIMIT, DEFAULT_MIN_IMPORTANCE
from .models import Memory, MemoryType
from .service.profile_store import ProfileStore

logger = logging.getLogger(__name__)


class MemoryRetriever:
    """Ranked memory lookup: importance * decay_factor, then recency.

    ``query`` is accepted so callers do not change when similarity search lands; it
    does not affect ranking today.
    """

    def __init__(self, store: ProfileStore, background: Optional[BackgroundTaskRunner] = None) -> None:
        self._store = store
        self._background = background or BackgroundTaskRunner()

    async def retrieve(
        self,
        profile_id: str,
        query: Optional[str] = None,
        *,
        limit: int = DEFAULT_MEMORY_LIMIT,
        memory_type: Optional[MemoryType] = None,
        min_importance: float = DEFAULT_MIN_IMPORTANCE,
    ) -> List[Memory]:
        memories = await self._store.get_memories(
            profile_id,
            limit=limit or DEFAULT_MEMORY_LIMIT,
            memory_type=memory_type,
            min_importance=min_importance,
        )
        if memories:
            self._background.submit(
                self._touch([m.id for m in memories]),
                description=f"touch {len(memories)} memories for profile {profile_id}",
            )
        return memories

    async def get_recent(self, profile_id: str, limit: int = DEFAULT_MEMORY_LIMIT) -> List[Memory]:
        return await self._store.get_recent_memories(profile_id, limit)

    async def _touch(self, memory_ids: List[str]) -> None:
        results = await asyncio.gather(
            *(self._store.touch_memory(memory_id) for memory_id in memory_ids),
            return_exceptions=True,
        )
        failed = [mid for mid, result in zip(memory_ids, results) if isinstance(result, Exception)]
        if failed:
            logger.error("Failed to touch memories %s", failed)


__all__ = ["MemoryRetriever"]
