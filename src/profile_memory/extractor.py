from __future__ import annotations

import logging
from typing import List, Optional

from src.llm_core import RetryOptions, log_error

from .llm_client import ExtractionLLMClient
from .models import MEMORY_TYPES, ConversationMessage, MemoryCandidate
from .prompts import (
    DEFAULT_MEMORY_EXTRACTION_PROMPT,
    MEMORY_EXTRACTION_PROMPT_FILE,
    MEMORY_EXTRACTION_SYSTEM_PROMPT,
    fill_template,
    format_transcript,
    load_prompt,
)

logger = logging.getLogger(__name__)


class MemoryExtractor:
    """Extract memory candidates from the user's side of a conversation.

    Assistant and system turns are never mined.
    """

    def __init__(
        self,
        llm_client: ExtractionLLMClient,
        *,
        extraction_enabled: bool = True,
        custom_prompt: Optional[str] = None,
    ) -> None:
        self._llm = llm_client
        self._enabled = extraction_enabled
        self._prompt_template = custom_prompt or load_prompt(
            MEMORY_EXTRACTION_PROMPT_FILE, DEFAULT_MEMORY_EXTRACTION_PROMPT
        )

    async def extract(
        self,
        messages: List[ConversationMessage],
        message_ids: Optional[List[str]] = None,
    ) -> List[MemoryCandidate]:
        if not self._enabled:
            return []
        user_messages = [m for m in messages if m.role == "user"]
        if not user_messages:
            return []
        if not self._llm.is_configured:
            logger.warning("No LLM API key configured, skipping memory extraction")
            return []

        prompt = fill_template(self._prompt_template, conversation=format_transcript(user_messages))
        retry = RetryOptions(
            max_retries=2,
            initial_delay_ms=1000,
            on_retry=lambda attempt, error: log_error(
                "MemoryExtractor",
                error,
                attempt=attempt,
                message_count=len(user_messages),
                total_messages=len(messages),
            ),
        )
        try:
            raw = await self._llm.complete(MEMORY_EXTRACTION_SYSTEM_PROMPT, prompt, retry=retry)
        except Exception as error:
            log_error(
                "MemoryExtractor",
                error,
                message_count=len(user_messages),
                total_messages=len(messages),
            )
            return []

        candidates = self.parse_extraction_response(raw or "[]")
        ids = list(message_ids or [])
        for candidate in candidates:
            candidate.source_message_ids = ids
        return candidates

    @staticmethod
    def parse_extraction_response(raw: str) -> List[MemoryCandidate]:
        parsed = ExtractionLLMClient.parse_json_array(raw)
        if parsed is None:
            return []
        candidates: List[MemoryCandidate] = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            content = item.get("content")
            memory_type = item.get("type")
            importance = item.get("importance")
            if not isinstance(content, str) or memory_type not in MEMORY_TYPES:
                continue
            if not isinstance(importance, (int, float)) or isinstance(importance, bool):
                continue
            if not 0.0 <= importance <= 1.0:
                continue
            candidates.append(
                MemoryCandidate(content=content, type=memory_type, importance=float(importance))
            )
        return candidates


__all__ = ["MemoryExtractor"]
