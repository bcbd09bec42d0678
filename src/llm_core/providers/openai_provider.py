"""OpenAI-compatible Chat Completions provider (also used for ``custom`` endpoints)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from ..models import (
    StandardCompletionRequest,
    StandardCompletionResponse,
    StandardStreamChunk,
    Usage,
)
from ..streaming import OpenAIStreamDecoder, token_count
from .base import LLMProvider


def _flatten_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Multi-part content; join text fragments
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return ""


class OpenAIProvider(LLMProvider):
    """Provider speaking the OpenAI Chat Completions wire format."""

    provider_name = "openai"
    default_base_url = "https://api.openai.com/v1"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _to_openai_body(self, request: StandardCompletionRequest, *, stream: bool) -> dict[str, Any]:
        """Pass every request field through, dropping unset ones."""
        body = request.model_dump(exclude_none=True, exclude={"messages"})
        body["model"] = self._resolve_model(request)
        body["messages"] = [m.to_wire() for m in request.messages]
        body["stream"] = stream
        return body

    @staticmethod
    def _parse_response(data: dict[str, Any], fallback_model: str) -> StandardCompletionResponse:
        choices = data.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        message = choice.get("message") or {}
        usage = data.get("usage")
        return StandardCompletionResponse(
            id=data.get("id") or "",
            model=data.get("model") or fallback_model,
            created=data.get("created"),
            content=_flatten_content(message.get("content")),
            finish_reason=choice.get("finish_reason") or "stop",
            usage=Usage(
                prompt_tokens=token_count(usage.get("prompt_tokens")),
                completion_tokens=token_count(usage.get("completion_tokens")),
                total_tokens=token_count(usage.get("total_tokens")),
            )
            if isinstance(usage, dict)
            else None,
        )

    async def create_completion(self, request: StandardCompletionRequest) -> StandardCompletionResponse:
        body = self._to_openai_body(request, stream=False)
        data = await self._post_json(f"{self.base_url}/chat/completions", self._headers(), body)
        return self._parse_response(data, body["model"])

    def create_completion_stream(self, request: StandardCompletionRequest) -> AsyncIterator[StandardStreamChunk]:
        body = self._to_openai_body(request, stream=True)
        return self._stream_chunks(
            f"{self.base_url}/chat/completions",
            self._headers(),
            body,
            OpenAIStreamDecoder(),
        )
