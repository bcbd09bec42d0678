"""Unit tests for llm_core: stream decoding, providers over a mock transport, retry."""
from __future__ import annotations

import asyncio
import json
import unittest
from unittest.mock import AsyncMock, MagicMock

import httpx

from src.llm_core import (
    AnthropicProvider,
    ConfigurationError,
    OpenAIProvider,
    ProviderConfig,
    RetryOptions,
    StandardCompletionRequest,
    UpstreamError,
    create_provider,
    is_retryable_error,
    retry_with_backoff,
)
from src.llm_core.streaming import (
    AnthropicStreamState,
    IncrementalLineDecoder,
    OpenAIStreamDecoder,
    format_sse_chunk,
    map_anthropic_stop_reason,
)


def _request(**kwargs) -> StandardCompletionRequest:
    payload = {"model": "test-model", "messages": [{"role": "user", "content": "hi"}]}
    payload.update(kwargs)
    return StandardCompletionRequest.model_validate(payload)


def _openai_line(content: str | None = None, finish_reason: str | None = None) -> str:
    delta = {"content": content} if content is not None else {}
    chunk = {
        "id": "chatcmpl-1",
        "model": "test-model",
        "created": 1,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(chunk)}\n\n"


def _body_stream(*parts: bytes):
    async def gen():
        for part in parts:
            yield part

    return gen()


def _provider(cls, handler, **config_kwargs):
    config = ProviderConfig(provider=cls.provider_name, api_key="sk-test", **config_kwargs)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return cls(config, client=client), client


class TestIncrementalLineDecoder(unittest.TestCase):
    def test_multibyte_character_split_across_reads(self) -> None:
        raw = "data: Hello 👋\n".encode("utf-8")
        split = raw.index("👋".encode("utf-8")) + 2
        decoder = IncrementalLineDecoder()
        self.assertEqual(decoder.feed(raw[:split]), [])
        self.assertEqual(decoder.feed(raw[split:]), ["data: Hello 👋"])

    def test_line_split_across_reads(self) -> None:
        decoder = IncrementalLineDecoder()
        self.assertEqual(decoder.feed(b"data: ab"), [])
        self.assertEqual(decoder.feed(b"c\r\ndata: d\n"), ["data: abc", "data: d"])

    def test_flush_returns_unterminated_last_line(self) -> None:
        decoder = IncrementalLineDecoder()
        decoder.feed(b"data: one\ndata: two")
        self.assertEqual(decoder.flush(), ["data: two"])
        self.assertEqual(decoder.flush(), [])


class TestOpenAIStreamDecoder(unittest.TestCase):
    def test_malformed_line_is_skipped(self) -> None:
        decoder = OpenAIStreamDecoder()
        self.assertIsNone(decoder.consume("data: {not json"))
        chunk = decoder.consume(_openai_line("ok").strip())
        self.assertIsNotNone(chunk)
        self.assertEqual(chunk.delta, "ok")

    def test_done_marks_finished(self) -> None:
        decoder = OpenAIStreamDecoder()
        self.assertIsNone(decoder.consume("data: [DONE]"))
        self.assertTrue(decoder.finished)

    def test_usage_only_chunk_is_skipped(self) -> None:
        decoder = OpenAIStreamDecoder()
        line = "data: " + json.dumps({"id": "x", "choices": [], "usage": {"prompt_tokens": 3}})
        self.assertIsNone(decoder.consume(line))

    def test_non_data_lines_ignored(self) -> None:
        decoder = OpenAIStreamDecoder()
        self.assertIsNone(decoder.consume(": keep-alive"))
        self.assertIsNone(decoder.consume(""))

    def test_wrong_shaped_fields_are_skipped_or_coerced(self) -> None:
        decoder = OpenAIStreamDecoder()
        bad_usage = {
            "id": "x",
            "choices": [{"delta": {"content": "ok"}, "finish_reason": None}],
            "usage": {"prompt_tokens": "n/a", "completion_tokens": 2, "total_tokens": [1]},
        }
        chunk = decoder.consume("data: " + json.dumps(bad_usage))
        self.assertEqual(chunk.delta, "ok")
        self.assertEqual(chunk.usage.prompt_tokens, 0)
        self.assertEqual(chunk.usage.completion_tokens, 2)
        self.assertEqual(chunk.usage.total_tokens, 0)

        self.assertEqual(decoder.consume('data: {"choices": [{"delta": "oops"}]}').delta, "")
        self.assertIsNone(decoder.consume('data: {"choices": "oops"}'))
        self.assertIsNone(decoder.consume('data: {"id": 5, "choices": [{"delta": {}}]}'))
        self.assertEqual(decoder.consume(_openai_line("next").strip()).delta, "next")


class TestAnthropicStreamState(unittest.TestCase):
    def _frame(self, payload: dict) -> str:
        return f"data: {json.dumps(payload)}"

    def test_full_frame_sequence(self) -> None:
        state = AnthropicStreamState()
        frames = [
            {"type": "message_start", "message": {"id": "msg_1", "model": "claude", "usage": {"input_tokens": 7}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
            {"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 2}},
            {"type": "message_stop"},
        ]
        chunks = [c for c in (state.consume(self._frame(f)) for f in frames) if c is not None]

        self.assertEqual([c.delta for c in chunks[:-1]], ["Hel", "lo"])
        final = chunks[-1]
        self.assertEqual(final.id, "msg_1")
        self.assertEqual(final.finish_reason, "length")
        self.assertEqual(final.usage.prompt_tokens, 7)
        self.assertEqual(final.usage.completion_tokens, 2)
        self.assertEqual(final.usage.total_tokens, 9)
        self.assertTrue(state.finished)

    def test_error_frame_raises(self) -> None:
        state = AnthropicStreamState()
        with self.assertRaises(UpstreamError) as ctx:
            state.consume(self._frame({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}))
        self.assertEqual(ctx.exception.status, 529)
        self.assertIn("busy", str(ctx.exception))

    def test_wrong_shaped_frames_are_skipped(self) -> None:
        state = AnthropicStreamState()
        lines = [
            'data: {"type": "message_start", "message": ["msg_1"]}',
            'data: {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": "many"}}}',
            'data: {"type": "content_block_delta", "delta": "oops"}',
            'data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": 42}}',
            'data: {"type": "message_delta", "delta": [], "usage": {"output_tokens": null}}',
            'data: {"type": "error", "error": "boom"}',
        ]
        with self.assertRaises(UpstreamError) as ctx:
            for line in lines:
                self.assertIsNone(state.consume(line))
        self.assertEqual(ctx.exception.status, 0)
        self.assertEqual(state.message_id, "msg_1")
        self.assertEqual(state.input_tokens, 0)

        final = state.consume('data: {"type": "message_stop"}')
        self.assertEqual(final.finish_reason, "stop")
        self.assertEqual(final.usage.total_tokens, 0)

    def test_stop_reason_mapping(self) -> None:
        self.assertEqual(map_anthropic_stop_reason("end_turn"), "stop")
        self.assertEqual(map_anthropic_stop_reason("stop_sequence"), "stop")
        self.assertEqual(map_anthropic_stop_reason("max_tokens"), "length")
        self.assertEqual(map_anthropic_stop_reason("tool_use"), "tool_calls")
        self.assertEqual(map_anthropic_stop_reason(None), "stop")


class TestOpenAIProvider(unittest.IsolatedAsyncioTestCase):
    async def test_completion_passes_extra_params_and_parses_response(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": "chatcmpl-9",
                    "model": "test-model",
                    "choices": [{"message": {"role": "assistant", "content": "Hi!"}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
                },
            )

        provider, client = _provider(OpenAIProvider, handler)
        response = await provider.create_completion(_request(temperature=0.2, seed=42, top_p=None))
        await client.aclose()

        self.assertEqual(seen["url"], "https://api.openai.com/v1/chat/completions")
        self.assertEqual(seen["auth"], "Bearer sk-test")
        self.assertEqual(seen["body"]["seed"], 42)
        self.assertEqual(seen["body"]["temperature"], 0.2)
        self.assertNotIn("top_p", seen["body"])
        self.assertFalse(seen["body"]["stream"])
        self.assertEqual(response.content, "Hi!")
        self.assertEqual(response.usage.total_tokens, 5)

    async def test_non_success_status_raises_upstream_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="overloaded")

        provider, client = _provider(OpenAIProvider, handler)
        with self.assertRaises(UpstreamError) as ctx:
            await provider.create_completion(_request())
        await client.aclose()

        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(ctx.exception.body, "overloaded")
        self.assertIn("Service Unavailable", str(ctx.exception))
        self.assertTrue(is_retryable_error(ctx.exception))

    async def test_deadline_raises_timeout_error(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={})

        provider, client = _provider(OpenAIProvider, handler, timeout_s=0.05)
        with self.assertRaises(UpstreamError) as ctx:
            await provider.create_completion(_request())
        await client.aclose()

        self.assertEqual(ctx.exception.status, 0)
        self.assertIn("timeout", str(ctx.exception))

    async def test_network_failure_raises_upstream_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider, client = _provider(OpenAIProvider, handler)
        with self.assertRaises(UpstreamError) as ctx:
            await provider.create_completion(_request())
        await client.aclose()

        self.assertEqual(ctx.exception.status, 0)
        self.assertIn("network error", str(ctx.exception))

    async def test_stream_yields_chunks_across_split_reads(self) -> None:
        raw = (
            _openai_line("Hello ")
            + _openai_line("👋")
            + "data: {broken\n\n"
            + _openai_line(None, "stop")
            + "data: [DONE]\n\n"
        ).encode("utf-8")
        cut = raw.index("👋".encode("utf-8")) + 1

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_body_stream(raw[:cut], raw[cut:]))

        provider, client = _provider(OpenAIProvider, handler)
        chunks = [chunk async for chunk in provider.create_completion_stream(_request())]
        await client.aclose()

        self.assertEqual("".join(c.delta for c in chunks), "Hello 👋")
        self.assertEqual(chunks[-1].finish_reason, "stop")

    async def test_stream_non_success_status_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="slow down")

        provider, client = _provider(OpenAIProvider, handler)
        with self.assertRaises(UpstreamError) as ctx:
            async for _ in provider.create_completion_stream(_request()):
                pass
        await client.aclose()
        self.assertEqual(ctx.exception.status, 429)

    async def test_stream_unterminated_final_line_is_decoded(self) -> None:
        raw = (_openai_line("Hi") + _openai_line(None, "stop").rstrip("\n")).encode("utf-8")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_body_stream(raw))

        provider, client = _provider(OpenAIProvider, handler)
        chunks = [chunk async for chunk in provider.create_completion_stream(_request())]
        await client.aclose()

        self.assertEqual([c.delta for c in chunks], ["Hi", ""])
        self.assertEqual(chunks[-1].finish_reason, "stop")

    async def test_stream_deadline_during_body(self) -> None:
        async def slow_body():
            yield _openai_line("first").encode("utf-8")
            await asyncio.sleep(1)
            yield _openai_line("late").encode("utf-8")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=slow_body())

        provider, client = _provider(OpenAIProvider, handler, timeout_s=0.1)
        received = []
        with self.assertRaises(UpstreamError) as ctx:
            async for chunk in provider.create_completion_stream(_request()):
                received.append(chunk.delta)
        await client.aclose()

        self.assertEqual(received, ["first"])
        self.assertEqual(ctx.exception.status, 0)

    def test_sse_framing(self) -> None:
        decoder = OpenAIStreamDecoder()
        chunk = decoder.consume(_openai_line("x").strip())
        frame = format_sse_chunk(chunk)
        self.assertTrue(frame.startswith("data: "))
        self.assertTrue(frame.endswith("\n\n"))
        self.assertEqual(json.loads(frame[6:])["object"], "chat.completion.chunk")


class TestAnthropicProvider(unittest.IsolatedAsyncioTestCase):
    async def test_system_messages_merged_and_response_normalized(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": "msg_1",
                    "model": "claude",
                    "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
                    "stop_reason": "end_turn",
                    "usage": {"input_tokens": 4, "output_tokens": 2},
                },
            )

        provider, client = _provider(AnthropicProvider, handler)
        request = StandardCompletionRequest.model_validate(
            {
                "model": "claude",
                "messages": [
                    {"role": "system", "content": "First."},
                    {"role": "user", "content": "hi"},
                    {"role": "system", "content": [{"type": "text", "text": "Second."}]},
                ],
                "stop": "END",
            }
        )
        response = await provider.create_completion(request)
        await client.aclose()

        self.assertEqual(seen["url"], "https://api.anthropic.com/v1/messages")
        self.assertEqual(seen["headers"]["x-api-key"], "sk-test")
        self.assertEqual(seen["headers"]["anthropic-version"], "2023-06-01")
        self.assertEqual(seen["body"]["system"], "First.\n\nSecond.")
        self.assertEqual(seen["body"]["messages"], [{"role": "user", "content": "hi"}])
        self.assertEqual(seen["body"]["max_tokens"], 4096)
        self.assertEqual(seen["body"]["stop_sequences"], ["END"])
        self.assertEqual(response.content, "Hello there")
        self.assertEqual(response.finish_reason, "stop")
        self.assertEqual(response.usage.total_tokens, 6)

    def _frames(self, *frames: dict) -> str:
        return "".join(f"event: {f['type']}\ndata: {json.dumps(f, ensure_ascii=False)}\n\n" for f in frames)

    async def test_stream_yields_chunks_across_split_reads(self) -> None:
        raw = self._frames(
            {"type": "message_start", "message": {"id": "msg_7", "model": "claude", "usage": {"input_tokens": 5}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello 👋"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}},
            {"type": "message_stop"},
        ).encode("utf-8")
        emoji_cut = raw.index("👋".encode("utf-8")) + 2
        frame_cut = raw.index(b'"message_delta"') + 5
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                content=_body_stream(raw[:emoji_cut], raw[emoji_cut:frame_cut], raw[frame_cut:]),
            )

        provider, client = _provider(AnthropicProvider, handler)
        chunks = [chunk async for chunk in provider.create_completion_stream(_request(model="claude"))]
        await client.aclose()

        self.assertTrue(seen["body"]["stream"])
        self.assertEqual([c.delta for c in chunks[:-1]], ["Hello 👋"])
        final = chunks[-1]
        self.assertEqual(final.id, "msg_7")
        self.assertEqual(final.model, "claude")
        self.assertEqual(final.finish_reason, "stop")
        self.assertEqual(final.usage.prompt_tokens, 5)
        self.assertEqual(final.usage.completion_tokens, 3)
        self.assertEqual(final.usage.total_tokens, 8)

    async def test_stream_unterminated_final_frame_is_decoded(self) -> None:
        raw = (
            self._frames(
                {"type": "message_start", "message": {"id": "msg_8", "model": "claude"}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
            )
            + 'data: {"type": "message_stop"}'
        ).encode("utf-8")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_body_stream(raw))

        provider, client = _provider(AnthropicProvider, handler)
        chunks = [chunk async for chunk in provider.create_completion_stream(_request(model="claude"))]
        await client.aclose()

        self.assertEqual([c.delta for c in chunks], ["Hi", ""])
        self.assertEqual(chunks[-1].finish_reason, "stop")


class TestProviderFactory(unittest.TestCase):
    def test_missing_api_key_raises_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            create_provider(ProviderConfig(provider="openai", api_key=""))

    def test_custom_uses_openai_format(self) -> None:
        provider = create_provider(ProviderConfig(provider="custom", api_key="k", base_url="http://localhost:9/v1/"))
        self.assertIsInstance(provider, OpenAIProvider)
        self.assertEqual(provider.base_url, "http://localhost:9/v1")

    def test_anthropic(self) -> None:
        provider = create_provider(ProviderConfig(provider="anthropic", api_key="k"))
        self.assertIsInstance(provider, AnthropicProvider)


class TestRetry(unittest.IsolatedAsyncioTestCase):
    def test_classifier(self) -> None:
        self.assertTrue(is_retryable_error(RuntimeError("Request timed out")))
        self.assertTrue(is_retryable_error(UpstreamError(429, "rate limited")))
        self.assertTrue(is_retryable_error(ConnectionError("reset")))
        self.assertFalse(is_retryable_error(UpstreamError(400, "bad request")))
        self.assertFalse(is_retryable_error(ValueError("invalid json")))

    async def test_retries_transient_failures_with_backoff(self) -> None:
        operation = AsyncMock(side_effect=[UpstreamError(503), UpstreamError(502), "ok"])
        sleep = AsyncMock()
        on_retry = MagicMock()

        result = await retry_with_backoff(
            operation,
            RetryOptions(max_retries=3, initial_delay_ms=100, max_delay_ms=150, on_retry=on_retry),
            sleep=sleep,
        )

        self.assertEqual(result, "ok")
        self.assertEqual(operation.await_count, 3)
        self.assertEqual([c.args[0] for c in sleep.await_args_list], [0.1, 0.15])
        self.assertEqual([c.args[0] for c in on_retry.call_args_list], [1, 2])

    async def test_permanent_failure_is_not_retried(self) -> None:
        operation = AsyncMock(side_effect=UpstreamError(401, "no"))
        sleep = AsyncMock()
        with self.assertRaises(UpstreamError):
            await retry_with_backoff(operation, RetryOptions(max_retries=3), sleep=sleep)
        self.assertEqual(operation.await_count, 1)
        sleep.assert_not_awaited()

    async def test_gives_up_after_max_retries(self) -> None:
        operation = AsyncMock(side_effect=TimeoutError("slow"))
        sleep = AsyncMock()
        with self.assertRaises(TimeoutError):
            await retry_with_backoff(operation, RetryOptions(max_retries=2), sleep=sleep)
        self.assertEqual(operation.await_count, 3)


if __name__ == "__main__":
    unittest.main()
