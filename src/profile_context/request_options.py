"""Per-request profile options carried in the chat body under ``profile_options``.

The key is removed before the request is forwarded upstream.
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, StrictBool, ValidationError
from pydantic.alias_generators import to_camel

from src.profile_memory.models import TraitSchema

from .errors import InvalidRequestError

PROFILE_OPTIONS_KEY = "profile_options"


class ProfileRequestOptions(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    # Replaces the default trait schemas for this request only.
    traits: Optional[List[TraitSchema]] = None
    skip_injection: StrictBool = False
    skip_extraction: StrictBool = False


def parse_profile_options(raw: Any, *, allow_trait_override: bool = True) -> ProfileRequestOptions:
    if raw is None:
        return ProfileRequestOptions()
    if not isinstance(raw, dict):
        raise InvalidRequestError(
            f"{PROFILE_OPTIONS_KEY} must be an object",
            code="invalid_profile_options",
        )
    try:
        options = ProfileRequestOptions.model_validate(raw)
    except ValidationError as exc:
        raise InvalidRequestError(
            f"Invalid {PROFILE_OPTIONS_KEY}",
            code="invalid_profile_options",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc

    if options.traits is not None and not allow_trait_override:
        raise InvalidRequestError(
            "Per-request trait schema overrides are disabled",
            code="trait_override_disabled",
        )
    return options


__all__ = ["PROFILE_OPTIONS_KEY", "ProfileRequestOptions", "parse_profile_options"]
