"""Unit tests for profile_context: request options, message injection, ProfileManager."""
from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from src.llm_core import ConfigurationError, StandardMessage
from src.llm_core.models import TextPart
from src.profile_context import InvalidRequestError, ProfileManager, ProfileNotFoundError, load_settings
from src.profile_context.errors import status_to_error_type, upstream_error_status
from src.profile_context.injection import CONTEXT_SEPARATOR, inject_context, last_user_text, to_conversation_messages
from src.profile_context.request_options import parse_profile_options
from src.profile_memory.background import BackgroundTaskRunner
from src.profile_memory.config import MemoryEngineConfig, ProfileStoreConfig
from src.profile_memory.engine import MemoryEngine
from src.profile_memory.models import ConversationMessage, TraitSchema
from src.profile_memory.service.profile_store import ProfileStore
from src.profile_memory.traits.engine import TraitEngine


def _mock_llm(configured: bool = True) -> MagicMock:
    llm = MagicMock()
    llm.is_configured = configured
    llm.complete = AsyncMock(return_value="[]")
    llm.aclose = AsyncMock()
    return llm


class TestRequestOptions(unittest.TestCase):
    def test_missing_options_are_defaults(self) -> None:
        options = parse_profile_options(None)
        self.assertIsNone(options.traits)
        self.assertFalse(options.skip_injection)
        self.assertFalse(options.skip_extraction)

    def test_camel_and_snake_case_accepted(self) -> None:
        options = parse_profile_options(
            {
                "skipInjection": True,
                "skip_extraction": True,
                "traits": [{"key": "mood", "extraction": {"confidenceThreshold": 0.4}}],
            }
        )
        self.assertTrue(options.skip_injection)
        self.assertTrue(options.skip_extraction)
        self.assertEqual(options.traits[0].extraction.confidence_threshold, 0.4)

    def test_invalid_shapes_rejected(self) -> None:
        for raw in ("yes", {"skipInjection": "yes"}, {"traits": [{"label": "no key"}]}, {"traits": "mood"}):
            with self.assertRaises(InvalidRequestError) as ctx:
                parse_profile_options(raw)
            self.assertEqual(ctx.exception.code, "invalid_profile_options")
            self.assertEqual(ctx.exception.status_code, 400)

    def test_trait_override_disabled(self) -> None:
        with self.assertRaises(InvalidRequestError) as ctx:
            parse_profile_options({"traits": []}, allow_trait_override=False)
        self.assertEqual(ctx.exception.code, "trait_override_disabled")
        self.assertEqual(ctx.exception.to_response()["error"]["type"], "invalid_request_error")


class TestUpstreamErrorStatus(unittest.TestCase):
    def test_client_statuses_keep_their_type(self) -> None:
        self.assertEqual(upstream_error_status(401), (401, "authentication_error"))
        self.assertEqual(upstream_error_status(429), (429, "rate_limit_error"))
        self.assertEqual(upstream_error_status(400), (400, "invalid_request_error"))

    def test_server_and_missing_statuses_are_upstream_errors(self) -> None:
        self.assertEqual(upstream_error_status(500), (500, "upstream_error"))
        self.assertEqual(upstream_error_status(529), (529, "upstream_error"))
        self.assertEqual(upstream_error_status(0), (502, "upstream_error"))
        self.assertEqual(status_to_error_type(503), "upstream_error")


class TestInjection(unittest.TestCase):
    def test_appends_to_existing_system_string(self) -> None:
        messages = [
            StandardMessage(role="system", content="Be brief."),
            StandardMessage(role="user", content="hi"),
        ]
        out = inject_context(messages, "## User Attributes\nx")
        self.assertEqual(out[0].content, f"Be brief.{CONTEXT_SEPARATOR}## User Attributes\nx")
        self.assertEqual(messages[0].content, "Be brief.")

    def test_appends_text_part_to_part_list(self) -> None:
        messages = [StandardMessage(role="system", content=[TextPart(text="Be brief.")])]
        out = inject_context(messages, "ctx")
        self.assertEqual([p.text for p in out[0].content], ["Be brief.", "ctx"])

    def test_prepends_system_message(self) -> None:
        messages = [StandardMessage(role="user", content="hi")]
        out = inject_context(messages, "ctx")
        self.assertEqual([m.role for m in out], ["system", "user"])
        self.assertEqual(out[0].content, "ctx")

    def test_empty_context_is_noop(self) -> None:
        messages = [StandardMessage(role="user", content="hi")]
        self.assertEqual(inject_context(messages, ""), messages)

    def test_text_helpers(self) -> None:
        messages = [
            StandardMessage(role="user", content="first"),
            StandardMessage(role="assistant", content=""),
            StandardMessage(role="user", content=[TextPart(text="a"), TextPart(text="b")]),
        ]
        self.assertEqual(last_user_text(messages), "a\nb")
        converted = to_conversation_messages(messages)
        self.assertEqual([(m.role, m.content) for m in converted], [("user", "first"), ("user", "a\nb")])


class TestLoadSettings(unittest.TestCase):
    def test_reads_environment(self) -> None:
        env = {
            "LLM_PROVIDER": "anthropic",
            "LLM_API_KEY": "",
            "ANTHROPIC_API_KEY": "sk-ant",
            "MAX_MESSAGES_PER_PROFILE": "50",
            "TRAIT_EXTRACTION_ENABLED": "off",
            "SUMMARIZATION_INTERVAL_MINUTES": "15",
            "INJECT_MEMORIES": "yes",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=False), patch("dotenv.load_dotenv"):
            settings = load_settings()
        self.assertEqual(settings.llm.provider, "anthropic")
        self.assertEqual(settings.llm.api_key, "sk-ant")
        self.assertEqual(settings.memory.max_messages_per_profile, 50)
        self.assertFalse(settings.traits.extraction_enabled)
        self.assertEqual(settings.memory.summarization_interval, 15)
        self.assertTrue(settings.inject_memories)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_bad_number_raises(self) -> None:
        with patch.dict(os.environ, {"MAX_MESSAGES_PER_PROFILE": "lots"}), patch("dotenv.load_dotenv"):
            with self.assertRaises(ConfigurationError):
                load_settings()


class TestProfileManager(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.store = ProfileStore(ProfileStoreConfig(sqlite_path=Path(self._tmp.name) / "profiles.db"))
        self.addCleanup(self.store.close)
        self.background = BackgroundTaskRunner()
        self.llm = _mock_llm(configured=False)

    async def asyncTearDown(self) -> None:
        await self.background.drain()

    def _manager(self, llm=None, **kwargs) -> ProfileManager:
        llm = llm or self.llm
        traits = TraitEngine(self.store, llm_client=llm)
        memory = MemoryEngine(self.store, MemoryEngineConfig(), llm_client=llm, background=self.background)
        return ProfileManager(self.store, traits, memory, background=self.background, **kwargs)

    async def test_invalid_retention_cap(self) -> None:
        for value in (-1, 1.5, True):
            with self.assertRaises(ConfigurationError):
                self._manager(max_messages_per_profile=value)

    async def test_build_context_unknown_profile(self) -> None:
        with self.assertRaises(ProfileNotFoundError) as ctx:
            await self._manager().build_context("missing")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_injection_text_sections(self) -> None:
        manager = self._manager()
        profile = await manager.get_or_create_profile("user-1")
        await manager.get_trait_engine().set_trait(profile.id, "name", "Ann")
        await manager.get_memory_engine().create_memory(profile.id, "Owns a cat", "fact", 0.8)

        text = await manager.build_injection_text(profile.id, "hello")

        self.assertEqual(
            text,
            "## User Profile\nThis is Ann.\n\n## User Attributes\nUser's name is Ann.",
        )

    async def test_injection_text_with_memories_opt_in(self) -> None:
        manager = self._manager(inject_memories=True)
        profile = await manager.get_or_create_profile("user-1")
        await manager.get_memory_engine().create_memory(profile.id, "Owns a cat", "fact", 0.8)
        await manager.get_memory_engine().create_memory(profile.id, "Said hi once", "event", 0.2)

        text = await manager.build_injection_text(profile.id)

        self.assertIn("## User Profile\nNew user profile", text)
        self.assertIn("## Relevant Context\n- Owns a cat", text)
        self.assertNotIn("Said hi once", text)

    async def test_injection_uses_request_schemas(self) -> None:
        manager = self._manager()
        profile = await manager.get_or_create_profile("user-1")
        await manager.get_trait_engine().set_trait(profile.id, "name", "Ann")
        custom = [TraitSchema.model_validate({"key": "name", "injection": {"template": "Call them {{value}}."}})]

        text = await manager.build_injection_text(profile.id, schemas=custom)

        self.assertIn("## User Attributes\nCall them Ann.", text)

    async def test_process_conversation_stores_and_extracts(self) -> None:
        llm = _mock_llm()
        trait_reply = json.dumps([{"key": "name", "value": "Ann", "confidence": 0.95, "action": "create"}])
        memory_reply = json.dumps([{"content": "User is named Ann", "type": "fact", "importance": 0.9}])

        async def complete(system_prompt: str, prompt: str, **kwargs) -> str:
            return trait_reply if "trait" in system_prompt.lower() else memory_reply

        llm.complete = AsyncMock(side_effect=complete)
        manager = self._manager(llm)
        profile = await manager.get_or_create_profile("user-1")
        messages = [
            ConversationMessage(role="user", content="I'm Ann"),
            ConversationMessage(role="assistant", content="Hi Ann"),
        ]

        result = await manager.process_conversation(profile.id, messages, request_id="req-1", model="m")

        self.assertTrue(result.stored)
        self.assertEqual([u.key for u in result.traits_extracted], ["name"])
        stored = await manager.get_recent_messages(profile.id)
        self.assertEqual({m.request_id for m in stored}, {"req-1"})
        (trait,) = await manager.get_trait_engine().get_traits(profile.id)
        self.assertEqual(set(trait.source_message_ids), {m.id for m in stored})
        (memory,) = await manager.get_memory_engine().get_recent_memories(profile.id)
        self.assertEqual(memory.content, "User is named Ann")

    async def test_skip_extraction_still_stores_messages(self) -> None:
        llm = _mock_llm()
        manager = self._manager(llm)
        profile = await manager.get_or_create_profile("user-1")

        result = await manager.process_conversation(
            profile.id,
            [ConversationMessage(role="user", content="hello")],
            skip_extraction=True,
        )

        self.assertTrue(result.stored)
        self.assertEqual(result.traits_extracted, [])
        self.assertEqual(len(await manager.get_recent_messages(profile.id)), 1)
        llm.complete.assert_not_awaited()

    async def test_retention_trims_oldest_messages(self) -> None:
        manager = self._manager(max_messages_per_profile=3)
        profile = await manager.get_or_create_profile("user-1")
        for i in range(5):
            await manager.process_conversation(profile.id, [ConversationMessage(role="user", content=f"m{i}")])

        recent = await manager.get_recent_messages(profile.id, 10)
        self.assertEqual([m.content for m in recent], ["m4", "m3", "m2"])

    async def test_background_processing_swallows_errors(self) -> None:
        manager = self._manager()
        with self.assertLogs("src.llm_core.retry", level="ERROR"):
            await manager.process_conversation_background(
                "no-such-profile",
                [ConversationMessage(role="user", content="x")],
            )

    async def test_update_summary_bumps_version(self) -> None:
        manager = self._manager()
        profile = await manager.get_or_create_profile("user-1")
        updated = await manager.update_summary(profile.id, "Manual summary")
        self.assertEqual(updated.summary_version, 1)
        self.assertEqual(updated.summary, "Manual summary")
        self.assertIsNone(await manager.update_summary("missing", "x"))

    async def test_find_profile_by_either_id(self) -> None:
        manager = self._manager()
        profile = await manager.get_or_create_profile("ext-1")
        self.assertEqual((await manager.find_profile(profile.id)).id, profile.id)
        self.assertEqual((await manager.find_profile("ext-1")).id, profile.id)
        self.assertIsNone(await manager.find_profile("nope"))

    async def test_export_and_delete(self) -> None:
        manager = self._manager()
        profile = await manager.get_or_create_profile("user-1")
        await manager.get_trait_engine().set_trait(profile.id, "name", "Ann")
        await manager.store_conversation(profile.id, [ConversationMessage(role="user", content="hello")])

        exported = await manager.export_profile(profile.id)
        self.assertEqual(exported["profile"]["external_id"], "user-1")
        self.assertEqual(exported["traits"][0]["value"], "Ann")
        self.assertEqual(exported["messages"][0]["content"], "hello")

        self.assertTrue(await manager.delete_profile(profile.id))
        with self.assertRaises(ProfileNotFoundError):
            await manager.export_profile(profile.id)


if __name__ == "__main__":
    unittest.main()
