from __future__ import annotations

from typing import List, Optional

from src.llm_core.models import StandardMessage, TextPart
from src.profile_memory.models import ConversationMessage

CONTEXT_SEPARATOR = "\n\n---\n\n"


def to_conversation_messages(messages: List[StandardMessage]) -> List[ConversationMessage]:
    """Flatten messages to plain text for extraction, dropping ones with no text."""
    out: List[ConversationMessage] = []
    for message in messages:
        text = message.text
        if text.strip():
            out.append(ConversationMessage(role=message.role, content=text))
    return out


def last_user_text(messages: List[StandardMessage]) -> Optional[str]:
    for message in reversed(messages):
        if message.role == "user":
            text = message.text
            if text:
                return text
    return None


def inject_context(messages: List[StandardMessage], context: str) -> List[StandardMessage]:
    """Return a copy of ``messages`` carrying ``context`` in the system prompt.

    The context is appended to the first system message (after a separator, or as an
    extra text part for part-list content); without one, a system message is prepended.
    """
    if not context:
        return list(messages)

    out = list(messages)
    for index, message in enumerate(out):
        if message.role != "system":
            continue
        if isinstance(message.content, str):
            content = f"{message.content}{CONTEXT_SEPARATOR}{context}" if message.content else context
            out[index] = message.model_copy(update={"content": content})
        else:
            parts = [*message.content, TextPart(text=context)]
            out[index] = message.model_copy(update={"content": parts})
        return out

    return [StandardMessage(role="system", content=context), *out]


__all__ = ["CONTEXT_SEPARATOR", "inject_context", "last_user_text", "to_conversation_messages"]
