from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from src.llm_core import RetryOptions, log_error

from ..config import INJECTION_CONFIDENCE_MULTIPLIER, TraitEngineConfig
from ..llm_client import ExtractionLLMClient
from ..models import TRAIT_ACTIONS, ConversationMessage, Trait, TraitSchema, TraitSource, TraitUpdate
from ..prompts import (
    DEFAULT_TRAIT_EXTRACTION_PROMPT,
    TRAIT_EXTRACTION_PROMPT_FILE,
    TRAIT_EXTRACTION_SYSTEM_PROMPT,
    fill_template,
    format_transcript,
    load_prompt,
)
from ..service.profile_store import ProfileStore
from .schema import (
    DEFAULT_TRAIT_SCHEMAS,
    SchemaMap,
    build_schema_context,
    build_schema_map,
    format_existing_traits,
    format_trait_value,
)

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TraitEngine:
    """Schema-driven trait extraction, persistence and prompt injection.

    The active schema set is resolved per call: a caller-supplied list replaces the
    engine defaults for that call only, so concurrent requests with different
    overrides never see each other's schemas.
    """

    def __init__(
        self,
        store: ProfileStore,
        config: Optional[TraitEngineConfig] = None,
        *,
        llm_client: Optional[ExtractionLLMClient] = None,
        default_schemas: Optional[Sequence[TraitSchema]] = None,
    ) -> None:
        self._store = store
        self._config = config or TraitEngineConfig()
        self._llm = llm_client or ExtractionLLMClient(self._config.llm)
        self._default_schemas = build_schema_map(
            DEFAULT_TRAIT_SCHEMAS if default_schemas is None else default_schemas
        )
        self._prompt_template = self._config.custom_prompt or load_prompt(
            TRAIT_EXTRACTION_PROMPT_FILE, DEFAULT_TRAIT_EXTRACTION_PROMPT
        )

    # ------------------------------------------------------------------
    # Schemas
    # ------------------------------------------------------------------

    def resolve_schemas(self, schemas: Optional[Sequence[TraitSchema]] = None) -> SchemaMap:
        if schemas is None:
            return self._default_schemas
        return build_schema_map(schemas)

    def get_schemas(self) -> List[TraitSchema]:
        return list(self._default_schemas.values())

    def get_schema(self, key: str) -> Optional[TraitSchema]:
        return self._default_schemas.get(key)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def get_traits(self, profile_id: str) -> List[Trait]:
        return await self._store.get_traits(profile_id)

    async def set_trait(
        self,
        profile_id: str,
        key: str,
        value: Any,
        *,
        confidence: float = 1.0,
        source: TraitSource = "manual",
        schemas: Optional[Sequence[TraitSchema]] = None,
    ) -> Trait:
        """Write a trait directly, bypassing extraction and thresholds."""
        schema = self.resolve_schemas(schemas).get(key)
        return await self._store.upsert_trait(
            profile_id,
            key,
            value,
            category=schema.category if schema else None,
            value_type=schema.value_type if schema else "string",
            confidence=confidence,
            source=source,
        )

    async def delete_trait(self, profile_id: str, key: str) -> bool:
        return await self._store.delete_trait(profile_id, key)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract_traits(
        self,
        messages: List[ConversationMessage],
        existing_traits: List[Trait],
        schemas: Optional[Sequence[TraitSchema]] = None,
    ) -> List[TraitUpdate]:
        """Ask the LLM for trait updates and keep the ones the active schemas accept.

        Returns an empty list when extraction is disabled, no API key is configured,
        the reply cannot be parsed, or the call keeps failing.
        """
        if not self._config.extraction_enabled:
            return []
        if not self._llm.is_configured:
            logger.warning("No LLM API key configured, skipping trait extraction")
            return []

        schema_map = self.resolve_schemas(schemas)
        prompt = self._build_extraction_prompt(messages, existing_traits, schema_map)
        retry = RetryOptions(
            max_retries=2,
            initial_delay_ms=1000,
            on_retry=lambda attempt, error: log_error(
                "TraitEngine",
                error,
                attempt=attempt,
                message_count=len(messages),
                existing_trait_count=len(existing_traits),
            ),
        )
        try:
            raw = await self._llm.complete(TRAIT_EXTRACTION_SYSTEM_PROMPT, prompt, retry=retry)
        except Exception as error:
            log_error(
                "TraitEngine",
                error,
                message_count=len(messages),
                existing_trait_count=len(existing_traits),
            )
            return []

        updates = self.parse_extraction_response(raw or "[]")
        return self.filter_by_confidence(updates, schema_map)

    async def apply_updates(
        self,
        profile_id: str,
        updates: List[TraitUpdate],
        schemas: Optional[Sequence[TraitSchema]] = None,
        source_message_ids: Optional[List[str]] = None,
    ) -> List[Trait]:
        """Persist updates one by one. A failing update is logged and skipped."""
        schema_map = self.resolve_schemas(schemas)
        results: List[Trait] = []
        for update in updates:
            try:
                if update.action == "delete":
                    await self._store.delete_trait(profile_id, update.key)
                    continue
                schema = schema_map.get(update.key)
                trait = await self._store.upsert_trait(
                    profile_id,
                    update.key,
                    update.value,
                    category=schema.category if schema else None,
                    value_type=schema.value_type if schema else "string",
                    confidence=update.confidence,
                    source="extracted",
                    source_message_ids=source_message_ids,
                )
                results.append(trait)
            except Exception:
                logger.exception("Failed to apply trait update %s for profile %s", update.key, profile_id)
        return results

    async def extract_and_apply(
        self,
        profile_id: str,
        messages: List[ConversationMessage],
        schemas: Optional[Sequence[TraitSchema]] = None,
        source_message_ids: Optional[List[str]] = None,
    ) -> List[TraitUpdate]:
        existing = await self.get_traits(profile_id)
        updates = await self.extract_traits(messages, existing, schemas)
        if updates:
            await self.apply_updates(profile_id, updates, schemas, source_message_ids)
            logger.info("Applied %d trait updates for profile %s", len(updates), profile_id)
        return updates

    @staticmethod
    def parse_extraction_response(raw: str) -> List[TraitUpdate]:
        parsed = ExtractionLLMClient.parse_json_array(raw)
        if parsed is None:
            return []
        updates: List[TraitUpdate] = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            key = item.get("key")
            if not isinstance(key, str) or "value" not in item:
                continue
            if not _is_number(item.get("confidence")) or item.get("action") not in TRAIT_ACTIONS:
                continue
            reason = item.get("reason")
            updates.append(
                TraitUpdate(
                    key=key,
                    value=item["value"],
                    confidence=float(item["confidence"]),
                    action=item["action"],
                    reason=reason if isinstance(reason, str) else None,
                )
            )
        return updates

    @staticmethod
    def filter_by_confidence(updates: List[TraitUpdate], schema_map: SchemaMap) -> List[TraitUpdate]:
        """Drop unknown keys and updates below the key's own threshold (equality passes)."""
        accepted: List[TraitUpdate] = []
        for update in updates:
            schema = schema_map.get(update.key)
            if schema is None:
                continue
            if update.confidence >= schema.extraction.confidence_threshold:
                accepted.append(update)
        return accepted

    # ------------------------------------------------------------------
    # Injection
    # ------------------------------------------------------------------

    def build_injection_context(
        self,
        traits: List[Trait],
        schemas: Optional[Sequence[TraitSchema]] = None,
    ) -> str:
        """Render traits through their schema templates, highest priority first."""
        schema_map = self.resolve_schemas(schemas)
        lines: List[tuple[int, str]] = []
        for trait in traits:
            schema = schema_map.get(trait.key)
            if schema is None or not schema.injection.enabled:
                continue
            threshold = schema.extraction.confidence_threshold
            if trait.confidence < threshold * INJECTION_CONFIDENCE_MULTIPLIER:
                continue
            template = schema.injection.template or f"{trait.key}: {{{{value}}}}"
            lines.append((schema.injection.priority, fill_template(template, value=format_trait_value(trait.value))))

        lines.sort(key=lambda item: item[0], reverse=True)
        return "\n".join(text for _, text in lines)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_extraction_prompt(
        self,
        messages: List[ConversationMessage],
        existing_traits: List[Trait],
        schema_map: SchemaMap,
    ) -> str:
        schema_context = build_schema_context(schema_map.values())
        return fill_template(
            self._prompt_template,
            trait_schema=schema_context,
            schemas=schema_context,
            current_traits=format_existing_traits(existing_traits),
            conversation=format_transcript(messages),
        )


__all__ = ["TraitEngine"]
