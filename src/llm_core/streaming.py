"""Incremental decoding of upstream SSE byte streams into StandardStreamChunk objects.

Upstream bodies arrive as arbitrarily split byte reads: a multi-byte UTF-8 sequence or
a line can straddle two reads. ``IncrementalLineDecoder`` keeps the undecoded tail
bytes and the partial line between reads and only hands out complete lines. The
per-vendor decoders below turn those lines into chunks, carrying whatever state the
vendor's frame sequence needs in an explicit object owned by a single stream call.
"""

from __future__ import annotations

import codecs
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from .errors import UpstreamError
from .models import StandardStreamChunk, Usage

logger = logging.getLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"
_DATA_PREFIX = "data:"


class IncrementalLineDecoder:
    """UTF-8 decoder that yields complete ``\\n``-terminated lines across split reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the trailing partial line once the body has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer.rstrip("\r"), ""
        return [rest] if rest.strip() else []


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    decoder = IncrementalLineDecoder()
    async for data in chunks:
        for line in decoder.feed(data):
            yield line
    for line in decoder.flush():
        yield line


def _data_payload(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith(_DATA_PREFIX):
        return None
    return stripped[len(_DATA_PREFIX):].strip()


def _load_json_object(payload: str) -> dict[str, Any] | None:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream line: %.200s", payload)
        return None
    return data if isinstance(data, dict) else None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def token_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _usage_from_openai(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        prompt_tokens=token_count(raw.get("prompt_tokens")),
        completion_tokens=token_count(raw.get("completion_tokens")),
        total_tokens=token_count(raw.get("total_tokens")),
    )


class StreamDecoder(ABC):
    """Turns one decoded SSE line into at most one chunk.

    Lines that are not JSON objects, or whose fields have the wrong shape, are skipped.
    """

    finished: bool = False

    def consume(self, line: str) -> StandardStreamChunk | None:
        payload = _data_payload(line)
        if not payload:
            return None
        try:
            return self.decode_payload(payload)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.debug("Skipping unusable stream frame (%s): %.200s", exc, payload)
            return None

    @abstractmethod
    def decode_payload(self, payload: str) -> StandardStreamChunk | None:
        """Decode the text after ``data:``."""


class OpenAIStreamDecoder(StreamDecoder):
    """``data: <chat.completion.chunk json>`` lines ending with ``data: [DONE]``."""

    def __init__(self) -> None:
        self.finished = False

    def decode_payload(self, payload: str) -> StandardStreamChunk | None:
        if payload == "[DONE]":
            self.finished = True
            return None
        data = _load_json_object(payload)
        if data is None:
            return None
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        choice = choices[0]
        content = _as_dict(choice.get("delta")).get("content")
        finish_reason = choice.get("finish_reason")
        return StandardStreamChunk(
            id=data.get("id") or "",
            model=data.get("model") or "",
            created=data.get("created"),
            delta=content if isinstance(content, str) else "",
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
            usage=_usage_from_openai(data.get("usage")),
        )


_ANTHROPIC_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}

_ANTHROPIC_ERROR_STATUS = {
    "invalid_request_error": 400,
    "authentication_error": 401,
    "permission_error": 403,
    "not_found_error": 404,
    "rate_limit_error": 429,
    "api_error": 500,
    "overloaded_error": 529,
}


def map_anthropic_stop_reason(stop_reason: str | None) -> str:
    if not stop_reason:
        return "stop"
    return _ANTHROPIC_STOP_REASONS.get(stop_reason, stop_reason)


class AnthropicStreamState(StreamDecoder):
    """Frame state machine for the Messages streaming API.

    ``message_start`` carries the id, model and input token count, text arrives in
    ``content_block_delta`` frames, ``message_delta`` carries the stop reason and output
    token count, and ``message_stop`` closes the message. Other frame types are ignored.
    """

    def __init__(self) -> None:
        self.finished = False
        self.message_id = ""
        self.model = ""
        self.created = int(time.time())
        self.input_tokens = 0
        self.output_tokens = 0
        self.stop_reason: str | None = None

    def _chunk(self, **kwargs: Any) -> StandardStreamChunk:
        return StandardStreamChunk(id=self.message_id, model=self.model, created=self.created, **kwargs)

    def decode_payload(self, payload: str) -> StandardStreamChunk | None:
        data = _load_json_object(payload)
        if data is None:
            return None

        frame_type = data.get("type")
        if frame_type == "message_start":
            message = _as_dict(data.get("message"))
            message_id, model = message.get("id"), message.get("model")
            if isinstance(message_id, str) and message_id:
                self.message_id = message_id
            if isinstance(model, str) and model:
                self.model = model
            self.input_tokens = token_count(_as_dict(message.get("usage")).get("input_tokens"))
            return None

        if frame_type == "content_block_delta":
            delta = _as_dict(data.get("delta"))
            text = delta.get("text")
            if delta.get("type") == "text_delta" and isinstance(text, str) and text:
                return self._chunk(delta=text)
            return None

        if frame_type == "message_delta":
            stop_reason = _as_dict(data.get("delta")).get("stop_reason")
            if isinstance(stop_reason, str) and stop_reason:
                self.stop_reason = stop_reason
            usage = _as_dict(data.get("usage"))
            if "output_tokens" in usage:
                self.output_tokens = token_count(usage.get("output_tokens"))
            return None

        if frame_type == "message_stop":
            self.finished = True
            return self._chunk(
                finish_reason=map_anthropic_stop_reason(self.stop_reason),
                usage=Usage(
                    prompt_tokens=self.input_tokens,
                    completion_tokens=self.output_tokens,
                    total_tokens=self.input_tokens + self.output_tokens,
                ),
            )

        if frame_type == "error":
            error = _as_dict(data.get("error"))
            error_type = error.get("type") if isinstance(error.get("type"), str) else "error"
            raise UpstreamError(
                _ANTHROPIC_ERROR_STATUS.get(error_type, 0),
                payload,
                provider="anthropic",
                message=f"anthropic stream error ({error_type}): {error.get('message', '')}",
            )

        return None


def format_sse_data(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def format_sse_chunk(chunk: StandardStreamChunk) -> str:
    """Render a chunk as an outbound OpenAI-style SSE frame."""
    return format_sse_data(chunk.to_openai_dict())


__all__ = [
    "AnthropicStreamState",
    "IncrementalLineDecoder",
    "OpenAIStreamDecoder",
    "SSE_DONE",
    "StreamDecoder",
    "format_sse_chunk",
    "format_sse_data",
    "iter_lines",
    "map_anthropic_stop_reason",
    "token_count",
]
