"""Anthropic Messages API provider."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from ..models import (
    ExtensionPart,
    ImageUrlPart,
    StandardCompletionRequest,
    StandardCompletionResponse,
    StandardMessage,
    StandardStreamChunk,
    TextPart,
    Usage,
)
from ..streaming import AnthropicStreamState, map_anthropic_stop_reason, token_count
from .base import LLMProvider

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def _image_block(part: ImageUrlPart) -> dict[str, Any]:
    url = part.image_url.url
    if url.startswith("data:") and ";base64," in url:
        header, data = url.split(",", 1)
        media_type = header[len("data:"):].split(";", 1)[0]
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
    return {"type": "image", "source": {"type": "url", "url": url}}


def _to_anthropic_content(message: StandardMessage) -> str | list[dict[str, Any]]:
    if isinstance(message.content, str):
        return message.content
    blocks: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ImageUrlPart):
            blocks.append(_image_block(part))
        elif isinstance(part, ExtensionPart):
            blocks.append(part.model_dump())
    return blocks


class AnthropicProvider(LLMProvider):
    """Provider speaking the Anthropic Messages wire format."""

    provider_name = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _to_anthropic_body(self, request: StandardCompletionRequest, *, stream: bool) -> dict[str, Any]:
        """System messages move to the top-level ``system`` field, joined by a blank line."""
        system_texts: list[str] = []
        messages: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                text = message.text
                if text:
                    system_texts.append(text)
                continue
            messages.append({"role": message.role, "content": _to_anthropic_content(message)})

        body: dict[str, Any] = {
            "model": self._resolve_model(request),
            "messages": messages,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system_texts:
            body["system"] = "\n\n".join(system_texts)
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p

        extras = request.extra_params
        stop = extras.get("stop")
        if isinstance(stop, str):
            body["stop_sequences"] = [stop]
        elif isinstance(stop, list):
            body["stop_sequences"] = stop
        if extras.get("top_k") is not None:
            body["top_k"] = extras["top_k"]
        return body

    @staticmethod
    def _parse_response(data: dict[str, Any], fallback_model: str) -> StandardCompletionResponse:
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        input_tokens = token_count(usage.get("input_tokens"))
        output_tokens = token_count(usage.get("output_tokens"))
        return StandardCompletionResponse(
            id=data.get("id") or "",
            model=data.get("model") or fallback_model,
            content=text,
            finish_reason=map_anthropic_stop_reason(data.get("stop_reason")),
            usage=Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    async def create_completion(self, request: StandardCompletionRequest) -> StandardCompletionResponse:
        body = self._to_anthropic_body(request, stream=False)
        data = await self._post_json(f"{self.base_url}/messages", self._headers(), body)
        return self._parse_response(data, body["model"])

    def create_completion_stream(self, request: StandardCompletionRequest) -> AsyncIterator[StandardStreamChunk]:
        body = self._to_anthropic_body(request, stream=True)
        return self._stream_chunks(
            f"{self.base_url}/messages",
            self._headers(),
            body,
            AnthropicStreamState(),
        )
