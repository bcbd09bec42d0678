from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TraitValueType = Literal["string", "number", "boolean", "array", "enum"]
TraitSource = Literal["extracted", "manual", "inferred"]
TraitAction = Literal["create", "update", "delete"]
MemoryType = Literal["fact", "preference", "event", "context"]

TRAIT_ACTIONS = ("create", "update", "delete")
MEMORY_TYPES = ("fact", "preference", "event", "context")


class Profile(BaseModel):
    id: str
    external_id: str
    summary: Optional[str] = None
    summary_version: int = 0
    summary_updated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Traits
# ---------------------------------------------------------------------------


class _SchemaModel(BaseModel):
    # Schema files and request overrides use camelCase keys; snake_case is accepted too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TraitExtractionConfig(_SchemaModel):
    enabled: bool = True
    prompt_snippet: Optional[str] = None
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)


class TraitInjectionConfig(_SchemaModel):
    enabled: bool = True
    template: Optional[str] = None
    priority: int = 0


class TraitSchema(_SchemaModel):
    """Declarative definition of one trait. Not stored."""

    key: str = Field(min_length=1)
    label: Optional[str] = None
    description: Optional[str] = None
    value_type: TraitValueType = "string"
    enum_values: Optional[List[str]] = None
    category: Optional[str] = None
    extraction: TraitExtractionConfig = Field(default_factory=TraitExtractionConfig)
    injection: TraitInjectionConfig = Field(default_factory=TraitInjectionConfig)


class Trait(BaseModel):
    id: str
    profile_id: str
    key: str
    category: Optional[str] = None
    value_type: str = "string"
    value: Any = None
    confidence: float = 0.5
    source: TraitSource = "extracted"
    source_message_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TraitUpdate(BaseModel):
    key: str
    value: Any = None
    confidence: float
    action: TraitAction
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Memories and messages
# ---------------------------------------------------------------------------


class MemoryCandidate(BaseModel):
    content: str
    type: MemoryType
    importance: float = Field(ge=0.0, le=1.0)
    source_message_ids: List[str] = Field(default_factory=list)


class Memory(BaseModel):
    id: str
    profile_id: str
    content: str
    type: MemoryType
    importance: float = 0.5
    decay_factor: float = 1.0
    source_message_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    last_accessed_at: Optional[datetime] = None

    @property
    def score(self) -> float:
        return self.importance * self.decay_factor


class ConversationMessage(BaseModel):
    """Plain-text message handed to the extraction pipeline."""

    role: str
    content: str
    id: Optional[str] = None


class StoredMessage(BaseModel):
    id: str
    profile_id: str
    role: str
    content: str
    request_id: Optional[str] = None
    model: Optional[str] = None
    processed: bool = False
    created_at: datetime


class ProfileContext(BaseModel):
    profile: Profile
    traits: List[Trait] = Field(default_factory=list)
    recent_memories: List[Memory] = Field(default_factory=list)
    summary: str = ""


class ProcessResult(BaseModel):
    stored: bool
    traits_extracted: List[TraitUpdate] = Field(default_factory=list)


__all__ = [
    "ConversationMessage",
    "MEMORY_TYPES",
    "Memory",
    "MemoryCandidate",
    "MemoryType",
    "ProcessResult",
    "Profile",
    "ProfileContext",
    "StoredMessage",
    "TRAIT_ACTIONS",
    "Trait",
    "TraitAction",
    "TraitExtractionConfig",
    "TraitInjectionConfig",
    "TraitSchema",
    "TraitSource",
    "TraitUpdate",
    "TraitValueType",
]
