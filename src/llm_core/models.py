"""Provider-neutral chat completion models."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

MessageRole = Literal["system", "user", "assistant"]


# ---------------------------------------------------------------------------
# Message content parts
# ---------------------------------------------------------------------------


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str
    detail: Literal["auto", "low", "high"] | None = None


class ImageUrlPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class ExtensionPart(BaseModel):
    """Any other typed part. Unknown fields are kept and forwarded verbatim."""

    model_config = ConfigDict(extra="allow")

    type: str


def _part_tag(value: Any) -> str:
    part_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if part_type in ("text", "image_url"):
        return part_type
    return "extension"


ContentPart = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[ImageUrlPart, Tag("image_url")],
        Annotated[ExtensionPart, Tag("extension")],
    ],
    Discriminator(_part_tag),
]

MessageContent = Union[str, list[ContentPart]]


def text_from_content(content: MessageContent | None, separator: str = "\n") -> str:
    """Flatten message content to plain text; non-text parts are dropped."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    texts: list[str] = []
    for part in content:
        text = getattr(part, "text", None)
        if isinstance(text, str) and text:
            texts.append(text)
    return separator.join(texts)


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------


class StandardMessage(BaseModel):
    """A single chat message in the provider-neutral shape."""

    role: MessageRole
    content: MessageContent = ""

    @property
    def text(self) -> str:
        return text_from_content(self.content)

    def to_wire(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {
            "role": self.role,
            "content": [part.model_dump(exclude_none=True) for part in self.content],
        }


class StandardCompletionRequest(BaseModel):
    """Provider-neutral completion request.

    Sampling parameters the model does not name are accepted as extra fields and
    forwarded unchanged to OpenAI-compatible APIs.
    """

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[StandardMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stream: bool | None = None

    @property
    def extra_params(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class StandardCompletionResponse(BaseModel):
    id: str
    model: str
    created: int | None = None
    content: str = ""
    finish_reason: str = "stop"
    usage: Usage | None = None

    def to_openai_dict(self) -> dict[str, Any]:
        """Render as an OpenAI ``chat.completion`` object."""
        out: dict[str, Any] = {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created if self.created is not None else int(time.time()),
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": self.content},
                    "finish_reason": self.finish_reason,
                }
            ],
        }
        if self.usage is not None:
            out["usage"] = self.usage.model_dump()
        return out


class StandardStreamChunk(BaseModel):
    """One incremental piece of a streamed completion.

    ``finish_reason`` stays ``None`` until the final chunk.
    """

    id: str = ""
    model: str = ""
    created: int | None = None
    delta: str = ""
    finish_reason: str | None = None
    usage: Usage | None = Field(default=None)

    def to_openai_dict(self) -> dict[str, Any]:
        """Render as an OpenAI ``chat.completion.chunk`` object."""
        delta: dict[str, Any] = {"content": self.delta} if self.delta else {}
        out: dict[str, Any] = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created if self.created is not None else int(time.time()),
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": self.finish_reason}],
        }
        if self.usage is not None:
            out["usage"] = self.usage.model_dump()
        return out


__all__ = [
    "ContentPart",
    "ExtensionPart",
    "ImageUrl",
    "ImageUrlPart",
    "MessageContent",
    "MessageRole",
    "StandardCompletionRequest",
    "StandardCompletionResponse",
    "StandardMessage",
    "StandardStreamChunk",
    "TextPart",
    "Usage",
    "text_from_content",
]
