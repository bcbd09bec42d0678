from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional

from src.llm_core import (
    LLMProvider,
    ProviderConfig,
    RetryOptions,
    StandardCompletionRequest,
    StandardMessage,
    create_provider,
    retry_with_backoff,
)
from src.llm_core.config import DEFAULT_MODEL

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_PREVIEW_CHARS = 500


class ExtractionLLMClient:
    """Thin wrapper around an upstream provider for the extraction and summary prompts."""

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        *,
        provider: Optional[LLMProvider] = None,
    ) -> None:
        self._config = config or ProviderConfig()
        self._provider = provider

    @property
    def is_configured(self) -> bool:
        """False when no API key is available; callers then skip the LLM entirely."""
        return self._provider is not None or self._config.has_api_key

    def _get_provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = create_provider(self._config)
        return self._provider

    async def complete(
        self,
        system_prompt: str,
        prompt: str,
        *,
        retry: Optional[RetryOptions] = None,
    ) -> str:
        """Send one system + user prompt and return the reply text."""
        provider = self._get_provider()
        request = StandardCompletionRequest(
            model=self._config.model or DEFAULT_MODEL,
            messages=[
                StandardMessage(role="system", content=system_prompt),
                StandardMessage(role="user", content=prompt),
            ],
        )

        async def _call() -> str:
            response = await provider.create_completion(request)
            return response.content

        if retry is None:
            return await _call()
        return await retry_with_backoff(_call, retry)

    @staticmethod
    def parse_json_array(raw: str) -> Optional[List[Any]]:
        """Parse a JSON array from a model reply, tolerating a fenced code block.

        Returns None when the reply is not valid JSON or not an array.
        """
        text = (raw or "").strip()
        match = _FENCE_RE.search(text)
        if match:
            text = match.group(1).strip()
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            preview = raw if len(raw) <= _PREVIEW_CHARS else f"{raw[:_PREVIEW_CHARS]}...<truncated>"
            logger.error(
                "Failed to parse extraction response (length=%d): %s",
                len(raw),
                preview,
                exc_info=True,
            )
            return None
        if not isinstance(parsed, list):
            logger.warning("Expected array in extraction response, got %s", type(parsed).__name__)
            return None
        return parsed

    async def aclose(self) -> None:
        if self._provider is not None:
            await self._provider.aclose()


__all__ = ["ExtractionLLMClient"]
