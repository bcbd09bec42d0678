"""Detached background work (access-time touches, summary refreshes).

Submitted work runs as its own task on the running loop. Failures are logged and
dropped: nothing is retried and nothing reaches the code that submitted the work.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, work: Awaitable[Any], *, description: str) -> Optional[asyncio.Task[Any]]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, dropping background task: %s", description)
            close = getattr(work, "close", None)
            if close is not None:
                close()
            return None

        task = loop.create_task(self._run(work, description))
        # Keep a strong reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _run(work: Awaitable[Any], description: str) -> None:
        try:
            await work
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background task failed: %s", description)

    async def drain(self) -> None:
        """Wait for every submitted task, including ones submitted while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["BackgroundTaskRunner"]
