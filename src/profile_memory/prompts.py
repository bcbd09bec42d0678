"""Prompt templates for trait extraction, memory extraction and profile summaries.

Each template can be overridden by a markdown file of the same name in the prompts
directory (``PROMPTS_CONFIG_DIR`` wins over the packaged ``PROMPTS_DIR``).
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Iterable, List, Optional

from .models import ConversationMessage

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

try:
    from main_config import PROMPTS_DIR as _PROMPTS_DIR_STR

    PROMPTS_DIR: Optional[Path] = Path(_PROMPTS_DIR_STR)
except ImportError:
    PROMPTS_DIR = None

TRAIT_EXTRACTION_PROMPT_FILE = "trait-extraction.md"
MEMORY_EXTRACTION_PROMPT_FILE = "extraction.md"
SUMMARIZATION_PROMPT_FILE = "summarization.md"

TRAIT_EXTRACTION_SYSTEM_PROMPT = (
    "You are a trait extraction assistant. Always respond with valid JSON arrays only."
)
MEMORY_EXTRACTION_SYSTEM_PROMPT = (
    "You are a memory extraction assistant. Always respond with valid JSON arrays only."
)
SUMMARIZATION_SYSTEM_PROMPT = (
    "You are a profile summarization assistant. Create concise, natural language summaries."
)

DEFAULT_TRAIT_EXTRACTION_PROMPT = """You are a user profiling assistant. Your job is to extract and update structured traits about a user based on their conversations.

## Available Traits
{{schemas}}

## Current User Profile
{{current_traits}}

## Instructions
Analyze the conversation and determine if any traits should be:
- **Created**: New trait not previously known
- **Updated**: Existing trait needs revision based on new information
- **Deleted**: Previous trait is now contradicted

## Rules
- Only update traits when you have sufficient evidence
- Provide a confidence score (0.0-1.0) based on certainty
- Higher confidence for explicit statements, lower for inferences
- If unsure, prefer not updating over guessing
- Return an empty array [] if no traits can be extracted

## Output Format
Return ONLY a JSON array of trait updates, no other text:
[
  {
    "key": "trait_key",
    "value": "trait_value",
    "confidence": 0.75,
    "action": "create|update|delete",
    "reason": "Brief explanation"
  }
]

## Conversation
{{conversation}}"""

DEFAULT_MEMORY_EXTRACTION_PROMPT = """You are a memory extraction assistant. Your job is to analyze conversations and extract important facts, preferences, and context about the user.

## Instructions

Given the following conversation, extract:

1. **Facts**: Concrete information the user shared (name, job, location, etc.)
2. **Preferences**: Things the user likes, dislikes, or prefers
3. **Events**: Notable events or experiences the user mentioned
4. **Context**: Situational information relevant to ongoing conversations

## Rules

- Only extract information explicitly stated or strongly implied
- Each memory should be self-contained and understandable without context
- Assign importance (0.0-1.0) based on likely future relevance
- Do not extract information about the AI assistant, only about the user
- Return an empty array [] if no meaningful memories can be extracted

## Output Format

Return ONLY a JSON array of memory objects, no other text:
[
  {
    "content": "User works as a software engineer at a startup",
    "type": "fact",
    "importance": 0.8
  },
  {
    "content": "User prefers async/await patterns over callbacks in JavaScript",
    "type": "preference",
    "importance": 0.6
  }
]

Valid types: "fact", "preference", "event", "context"

## Conversation

{{conversation}}"""

DEFAULT_SUMMARIZATION_PROMPT = """You are a profile summarization assistant. Create a concise, natural language summary of a user based on their traits and memories.

## User Traits
{{traits}}

## Recent Memories
{{memories}}

## Instructions
Write a 2-3 sentence summary describing who this user is, written in third person. Include:
- Key identifying information (if known)
- Communication preferences
- Relevant context for conversations

## Rules
- Be concise (100-200 tokens max)
- Write naturally, as if describing a person to a colleague
- Focus on information relevant for conversation assistance
- Do not include speculative information
- Do not include low-confidence traits (< 0.5)

## Output
Write the summary directly, no JSON formatting needed."""


def _prompt_dirs() -> List[Path]:
    dirs: List[Path] = []
    from_env = os.getenv("PROMPTS_CONFIG_DIR")
    if from_env:
        dirs.append(Path(from_env))
    if PROMPTS_DIR is not None:
        dirs.append(PROMPTS_DIR)
    return dirs


def load_prompt(filename: str, fallback: str) -> str:
    """Return the prompt file's content, or ``fallback`` when it is missing or unreadable."""
    name = filename.strip()
    if not name or name != Path(name).name:
        logger.warning("Invalid prompt filename %r, using default prompt", filename)
        return fallback

    for directory in _prompt_dirs():
        path = directory / name
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8").strip()
        except OSError:
            logger.warning("Could not read prompt file %s, using default prompt", path, exc_info=True)
            return fallback
        if text:
            return text
    return fallback


def fill_template(template: str, **values: str) -> str:
    """Substitute ``{{name}}`` placeholders in one pass.

    Substituted text is not scanned again, and unknown placeholders are left as they are.
    """

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        return values[name] if name in values else match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def format_transcript(messages: Iterable[ConversationMessage]) -> str:
    return "\n\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


__all__ = [
    "DEFAULT_MEMORY_EXTRACTION_PROMPT",
    "DEFAULT_SUMMARIZATION_PROMPT",
    "DEFAULT_TRAIT_EXTRACTION_PROMPT",
    "MEMORY_EXTRACTION_PROMPT_FILE",
    "MEMORY_EXTRACTION_SYSTEM_PROMPT",
    "PROMPTS_DIR",
    "SUMMARIZATION_PROMPT_FILE",
    "SUMMARIZATION_SYSTEM_PROMPT",
    "TRAIT_EXTRACTION_PROMPT_FILE",
    "TRAIT_EXTRACTION_SYSTEM_PROMPT",
    "fill_template",
    "format_transcript",
    "load_prompt",
]
