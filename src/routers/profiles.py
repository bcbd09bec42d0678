"""Profile router: inspect and hand-edit profiles, traits, memories and summaries.

``{profile_id}`` accepts either the internal ID or the caller's external ID.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.profile_context import InvalidRequestError, ProfileManager, ProfileNotFoundError
from src.profile_context.errors import ProfileContextError
from src.profile_memory.models import Memory, MemoryType, Profile, Trait

from .dependencies import get_profile_manager

router = APIRouter(prefix="/api/profiles", tags=["profiles"])


class CreateProfileRequest(BaseModel):
    external_id: str = Field(..., min_length=1, description="Caller's own user identifier")


class SetTraitRequest(BaseModel):
    value: Any = Field(..., description="New trait value")
    confidence: float = Field(1.0, ge=0.0, le=1.0)


class CreateMemoryRequest(BaseModel):
    content: str = Field(..., min_length=1)
    type: MemoryType = "fact"
    importance: float = Field(0.5, ge=0.0, le=1.0)


class UpdateSummaryRequest(BaseModel):
    summary: str = Field(..., min_length=1)


class ProfileListResponse(BaseModel):
    profiles: List[Profile]
    total: int
    limit: int
    offset: int


class ProfileDetailResponse(BaseModel):
    profile: Profile
    traits: List[Trait]
    recent_memories: List[Memory]


async def _require_profile(manager: ProfileManager, profile_id: str) -> Profile:
    profile = await manager.find_profile(profile_id)
    if profile is None:
        raise ProfileNotFoundError(profile_id)
    return profile


@router.get("", response_model=ProfileListResponse)
async def list_profiles(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    search: Optional[str] = Query(None),
    manager: ProfileManager = Depends(get_profile_manager),
) -> ProfileListResponse:
    profiles, total = await manager.list_profiles(limit, offset, search)
    return ProfileListResponse(profiles=profiles, total=total, limit=limit, offset=offset)


@router.post("", response_model=Profile, status_code=201)
async def create_profile(
    request: CreateProfileRequest,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Profile:
    """Create a profile, or return the existing one for this external ID."""
    return await manager.get_or_create_profile(request.external_id.strip())


@router.get("/{profile_id}", response_model=ProfileDetailResponse)
async def get_profile(
    profile_id: str,
    manager: ProfileManager = Depends(get_profile_manager),
) -> ProfileDetailResponse:
    profile = await _require_profile(manager, profile_id)
    traits = await manager.get_trait_engine().get_traits(profile.id)
    memories = await manager.get_memory_engine().get_recent_memories(profile.id)
    return ProfileDetailResponse(profile=profile, traits=traits, recent_memories=memories)


@router.delete("/{profile_id}")
async def delete_profile(
    profile_id: str,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Dict[str, Any]:
    profile = await _require_profile(manager, profile_id)
    deleted = await manager.delete_profile(profile.id)
    return {"id": profile.id, "deleted": deleted}


# ---------------------------------------------------------------------------
# Traits
# ---------------------------------------------------------------------------


@router.get("/{profile_id}/traits")
async def list_traits(
    profile_id: str,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Dict[str, List[Trait]]:
    profile = await _require_profile(manager, profile_id)
    return {"traits": await manager.get_trait_engine().get_traits(profile.id)}


@router.put("/{profile_id}/traits/{key}", response_model=Trait)
async def set_trait(
    profile_id: str,
    key: str,
    request: SetTraitRequest,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Trait:
    """Manual edit. Keys outside the active schemas are rejected."""
    profile = await _require_profile(manager, profile_id)
    engine = manager.get_trait_engine()
    if engine.get_schema(key) is None:
        raise InvalidRequestError(f"Unknown trait key: {key}", code="unknown_trait")
    return await engine.set_trait(profile.id, key, request.value, confidence=request.confidence)


@router.delete("/{profile_id}/traits/{key}")
async def delete_trait(
    profile_id: str,
    key: str,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Dict[str, Any]:
    profile = await _require_profile(manager, profile_id)
    if not await manager.get_trait_engine().delete_trait(profile.id, key):
        raise ProfileContextError(
            f"Trait not found: {key}",
            code="trait_not_found",
            status_code=404,
            error_type="not_found_error",
        )
    return {"key": key, "deleted": True}


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------


@router.get("/{profile_id}/memories")
async def list_memories(
    profile_id: str,
    limit: int = Query(20, ge=1, le=100),
    memory_type: Optional[MemoryType] = Query(None, alias="type"),
    manager: ProfileManager = Depends(get_profile_manager),
) -> Dict[str, List[Memory]]:
    profile = await _require_profile(manager, profile_id)
    memories = await manager.get_memory_engine().retrieve_memories(
        profile.id,
        limit=limit,
        memory_type=memory_type,
        min_importance=0.0,
    )
    return {"memories": memories}


@router.post("/{profile_id}/memories", response_model=Memory, status_code=201)
async def create_memory(
    profile_id: str,
    request: CreateMemoryRequest,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Memory:
    profile = await _require_profile(manager, profile_id)
    memory = await manager.get_memory_engine().create_memory(
        profile.id,
        request.content.strip(),
        request.type,
        request.importance,
    )
    if memory is None:
        raise ProfileContextError(
            "An identical memory already exists",
            code="duplicate_memory",
            status_code=409,
            error_type="invalid_request_error",
        )
    return memory


@router.delete("/{profile_id}/memories/{memory_id}")
async def delete_memory(
    profile_id: str,
    memory_id: str,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Dict[str, Any]:
    profile = await _require_profile(manager, profile_id)
    if not await manager.get_memory_engine().delete_memory(profile.id, memory_id):
        raise ProfileContextError(
            f"Memory not found: {memory_id}",
            code="memory_not_found",
            status_code=404,
            error_type="not_found_error",
        )
    return {"id": memory_id, "deleted": True}


# ---------------------------------------------------------------------------
# Summary and export
# ---------------------------------------------------------------------------


@router.post("/{profile_id}/summary", response_model=Profile)
async def update_summary(
    profile_id: str,
    request: UpdateSummaryRequest,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Profile:
    profile = await _require_profile(manager, profile_id)
    updated = await manager.update_summary(profile.id, request.summary)
    if updated is None:
        raise ProfileNotFoundError(profile_id)
    return updated


@router.post("/{profile_id}/summary/regenerate")
async def regenerate_summary(
    profile_id: str,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Dict[str, Any]:
    profile = await _require_profile(manager, profile_id)
    summary = await manager.regenerate_summary(profile.id)
    refreshed = await manager.get_profile(profile.id)
    return {
        "summary": summary,
        "summary_version": refreshed.summary_version if refreshed else profile.summary_version,
    }


@router.get("/{profile_id}/export")
async def export_profile(
    profile_id: str,
    manager: ProfileManager = Depends(get_profile_manager),
) -> Dict[str, Any]:
    profile = await _require_profile(manager, profile_id)
    return await manager.export_profile(profile.id)
