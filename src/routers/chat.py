"""Chat router: OpenAI-compatible completions with profile context injected."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from src.llm_core import LLMProvider, StandardCompletionRequest, StandardMessage, UpstreamError
from src.llm_core.streaming import SSE_DONE, format_sse_chunk, format_sse_data
from src.profile_context import InvalidRequestError, ProfileManager, Settings
from src.profile_context.errors import error_response, upstream_error_status
from src.profile_context.injection import inject_context, last_user_text, to_conversation_messages
from src.profile_context.request_options import (
    PROFILE_OPTIONS_KEY,
    ProfileRequestOptions,
    parse_profile_options,
)

from .dependencies import get_profile_manager, get_settings, get_upstream_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["chat"])


def resolve_external_id(body: Dict[str, Any], header_value: Optional[str]) -> Optional[str]:
    """Header first, then ``metadata.profile_id``, then the OpenAI ``user`` field."""
    if header_value and header_value.strip():
        return header_value.strip()
    metadata = body.get("metadata")
    if isinstance(metadata, dict):
        profile_id = metadata.get("profile_id")
        if isinstance(profile_id, str) and profile_id.strip():
            return profile_id.strip()
    user = body.get("user")
    if isinstance(user, str) and user.strip():
        return user.strip()
    return None


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise InvalidRequestError("Request body must be valid JSON", code="invalid_json") from exc
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object", code="invalid_json")
    return body


def _parse_completion_request(body: Dict[str, Any]) -> StandardCompletionRequest:
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError("messages is required and must be a non-empty array", code="missing_messages")
    if not body.get("model"):
        raise InvalidRequestError("model is required", code="missing_model")
    try:
        return StandardCompletionRequest.model_validate(body)
    except ValidationError as exc:
        raise InvalidRequestError(
            "Invalid chat completion request",
            code="invalid_request",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc


class _StreamResult:
    """Assistant text collected while relaying a stream."""

    def __init__(self) -> None:
        self.parts: List[str] = []
        self.completed = False

    @property
    def text(self) -> str:
        return "".join(self.parts)


async def _relay_stream(
    provider: LLMProvider,
    request: StandardCompletionRequest,
    result: _StreamResult,
    profile_id: str,
) -> AsyncIterator[str]:
    try:
        async for chunk in provider.create_completion_stream(request):
            if chunk.delta:
                result.parts.append(chunk.delta)
            yield format_sse_chunk(chunk)
        yield SSE_DONE
        result.completed = True
    except UpstreamError as error:
        logger.error("Streaming error for profile %s: %s", profile_id, error)
        _, error_type = upstream_error_status(error.status)
        yield format_sse_data(error_response(str(error), error_type))


async def _process_after_stream(
    manager: ProfileManager,
    profile_id: str,
    messages: List[StandardMessage],
    result: _StreamResult,
    options: ProfileRequestOptions,
    model: str,
) -> None:
    if not result.completed or not result.text.strip():
        return
    conversation = to_conversation_messages(
        [*messages, StandardMessage(role="assistant", content=result.text)]
    )
    await manager.process_conversation_background(
        profile_id,
        conversation,
        model=model,
        skip_extraction=options.skip_extraction,
        custom_trait_schemas=options.traits,
    )


@router.post("/chat/completions")
async def chat_completions(
    request: Request,
    background_tasks: BackgroundTasks,
    x_profile_id: Optional[str] = Header(None),
    manager: ProfileManager = Depends(get_profile_manager),
    provider: LLMProvider = Depends(get_upstream_provider),
    settings: Settings = Depends(get_settings),
):
    """Forward a chat completion upstream with the caller's profile context in the system prompt.

    The conversation is stored and mined for traits and memories after the response is sent.
    """
    body = await _read_body(request)
    options = parse_profile_options(
        body.pop(PROFILE_OPTIONS_KEY, None),
        allow_trait_override=settings.traits.allow_request_override,
    )
    completion_request = _parse_completion_request(body)
    external_id = resolve_external_id(body, x_profile_id)
    if not external_id:
        raise InvalidRequestError(
            "Profile id required (X-Profile-Id header, metadata.profile_id or user)",
            code="missing_profile_id",
        )

    profile = await manager.get_or_create_profile(external_id)
    original_messages = list(completion_request.messages)

    if not options.skip_injection:
        injection_text = await manager.build_injection_text(
            profile.id,
            last_user_text(original_messages),
            options.traits,
        )
        if injection_text:
            completion_request = completion_request.model_copy(
                update={"messages": inject_context(original_messages, injection_text)}
            )

    if completion_request.stream:
        result = _StreamResult()
        background_tasks.add_task(
            _process_after_stream,
            manager,
            profile.id,
            original_messages,
            result,
            options,
            completion_request.model,
        )
        return StreamingResponse(
            _relay_stream(provider, completion_request, result, profile.id),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    response = await provider.create_completion(completion_request)
    if response.content.strip():
        conversation = to_conversation_messages(
            [*original_messages, StandardMessage(role="assistant", content=response.content)]
        )
        background_tasks.add_task(
            manager.process_conversation_background,
            profile.id,
            conversation,
            request_id=response.id,
            model=response.model,
            skip_extraction=options.skip_extraction,
            custom_trait_schemas=options.traits,
        )
    return JSONResponse(response.to_openai_dict())
