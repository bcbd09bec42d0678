"""Built-in trait schemas and helpers to describe them to the extraction prompt."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from ..models import Trait, TraitSchema

logger = logging.getLogger(__name__)

SchemaMap = Mapping[str, TraitSchema]

try:
    from main_config import TRAITS_DIR as _TRAITS_DIR_STR

    TRAITS_DIR: Optional[Path] = Path(_TRAITS_DIR_STR)
except ImportError:
    TRAITS_DIR = None


def _schema(
    key: str,
    label: str,
    description: str,
    value_type: str,
    category: str,
    hint: str,
    threshold: float,
    template: Optional[str],
    priority: int,
    *,
    enum_values: Optional[List[str]] = None,
    inject: bool = True,
) -> TraitSchema:
    return TraitSchema(
        key=key,
        label=label,
        description=description,
        value_type=value_type,
        enum_values=enum_values,
        category=category,
        extraction={"enabled": True, "prompt_snippet": hint, "confidence_threshold": threshold},
        injection={"enabled": inject, "template": template, "priority": priority},
    )


DEFAULT_TRAIT_SCHEMAS: Sequence[TraitSchema] = (
    _schema(
        "preferred_language",
        "Preferred Language",
        "The language the user prefers for communication",
        "string",
        "communication",
        "Detect the primary language the user communicates in",
        0.7,
        "User prefers to communicate in {{value}}.",
        10,
    ),
    _schema(
        "communication_style",
        "Communication Style",
        "How the user prefers to receive information",
        "enum",
        "communication",
        "Assess if user prefers formal, casual, technical, or simple communication",
        0.6,
        "User prefers {{value}} communication style.",
        9,
        enum_values=["formal", "casual", "technical", "simple"],
    ),
    _schema(
        "detail_preference",
        "Detail Preference",
        "How much detail the user wants in responses",
        "enum",
        "communication",
        "Determine if user prefers brief/concise, moderate, or detailed/comprehensive responses",
        0.5,
        "User prefers {{value}} responses.",
        8,
        enum_values=["brief", "moderate", "detailed"],
    ),
    _schema(
        "name",
        "Name",
        "User's name or preferred name",
        "string",
        "identity",
        "Extract the user's name if they mention it",
        0.9,
        "User's name is {{value}}.",
        10,
    ),
    _schema(
        "expertise_level",
        "Expertise Level",
        "User's technical/domain expertise",
        "enum",
        "context",
        "Assess user's expertise level based on vocabulary, questions asked, and context",
        0.5,
        "User has {{value}} expertise level.",
        7,
        enum_values=["beginner", "intermediate", "advanced", "expert"],
    ),
    _schema(
        "timezone",
        "Timezone",
        "User's timezone for time-sensitive information",
        "string",
        "context",
        "Detect timezone if user mentions location, time, or scheduling",
        0.8,
        None,
        0,
        inject=False,
    ),
    _schema(
        "interests",
        "Interests",
        "Topics and areas the user is interested in",
        "array",
        "preferences",
        "Identify recurring topics, hobbies, or professional interests mentioned by user",
        0.4,
        "User is interested in: {{value}}.",
        5,
    ),
    _schema(
        "current_goals",
        "Current Goals",
        "What the user is currently trying to achieve",
        "array",
        "context",
        "Identify any goals, projects, or objectives the user is working toward",
        0.5,
        "User's current goals: {{value}}.",
        6,
    ),
)


def build_schema_map(schemas: Iterable[TraitSchema]) -> SchemaMap:
    """Read-only key -> schema map. A later schema with the same key wins."""
    return MappingProxyType({schema.key: schema for schema in schemas})


def load_trait_schemas(path: Path) -> List[TraitSchema]:
    """Load schemas from a JSON file holding a list or ``{"traits": [...]}``.

    A relative path that does not exist from the working directory is looked up in
    ``TRAITS_DIR``.
    """
    path = Path(path)
    if not path.is_absolute() and not path.exists() and TRAITS_DIR is not None:
        path = TRAITS_DIR / path
    data: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("traits")
    if not isinstance(data, list):
        raise ValueError(f"Trait schema file {path} must contain a list of trait schemas")
    return [TraitSchema.model_validate(item) for item in data]


def format_trait_value(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def build_schema_context(schemas: Iterable[TraitSchema]) -> str:
    """Describe every extraction-enabled schema for the extraction prompt."""
    lines: List[str] = []
    for schema in schemas:
        if not schema.extraction.enabled:
            continue
        type_def = schema.value_type
        if schema.value_type == "enum" and schema.enum_values:
            type_def = f"enum[{', '.join(schema.enum_values)}]"
        lines.append(f"- {schema.key} ({type_def}): {schema.description or ''}")
        if schema.extraction.prompt_snippet:
            lines.append(f"  Hint: {schema.extraction.prompt_snippet}")
    return "\n".join(lines)


def format_existing_traits(traits: Iterable[Trait]) -> str:
    lines = []
    for trait in traits:
        value = json.dumps(trait.value) if isinstance(trait.value, (list, dict)) else str(trait.value)
        lines.append(f"- {trait.key}: {value} (confidence: {trait.confidence:.2f})")
    if not lines:
        return "No traits currently known about this user."
    return "\n".join(lines)


__all__ = [
    "DEFAULT_TRAIT_SCHEMAS",
    "SchemaMap",
    "build_schema_context",
    "build_schema_map",
    "format_existing_traits",
    "format_trait_value",
    "load_trait_schemas",
]
