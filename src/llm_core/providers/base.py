"""Abstract LLM provider interface and the shared HTTP plumbing behind it."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import httpx

from ..config import ProviderConfig
from ..errors import ConfigurationError, UpstreamError
from ..models import StandardCompletionRequest, StandardCompletionResponse, StandardStreamChunk
from ..streaming import IncrementalLineDecoder, StreamDecoder

logger = logging.getLogger(__name__)


class LLMProvider(ABC):
    """
    Abstract upstream chat completion API. Everything that talks to an LLM depends only
    on this interface and the Standard* models.

    Every call runs under one deadline of ``timeout_s`` seconds covering the connection,
    the response headers and (for streams) every body read. On expiry the HTTP call is
    aborted and ``UpstreamError`` with status 0 is raised.
    """

    provider_name: str = ""
    default_base_url: str = ""

    def __init__(self, config: ProviderConfig, *, client: httpx.AsyncClient | None = None) -> None:
        if not config.api_key:
            raise ConfigurationError(f"{self.provider_name} API key is required")
        self.api_key = config.api_key
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.default_model = config.model
        self.timeout_s = config.timeout_s
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Deadlines are enforced per call, not by the transport.
            self._client = httpx.AsyncClient(timeout=None)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    async def create_completion(self, request: StandardCompletionRequest) -> StandardCompletionResponse:
        """Non-streaming completion."""
        ...

    @abstractmethod
    def create_completion_stream(self, request: StandardCompletionRequest) -> AsyncIterator[StandardStreamChunk]:
        """Streaming completion; yields text deltas, the last chunk carries ``finish_reason``."""
        ...

    def _resolve_model(self, request: StandardCompletionRequest) -> str:
        return request.model or self.default_model or ""

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _timeout_error(self) -> UpstreamError:
        return UpstreamError.timeout(self.provider_name, self.timeout_s)

    async def _post_json(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await asyncio.wait_for(client.post(url, headers=headers, json=body), self.timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise self._timeout_error() from None
        except httpx.TransportError as exc:
            raise UpstreamError.network(self.provider_name, exc) from exc

        if not response.is_success:
            raise UpstreamError(response.status_code, response.text, provider=self.provider_name)
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise UpstreamError(
                response.status_code,
                response.text,
                provider=self.provider_name,
                message=f"{self.provider_name} returned invalid JSON",
            ) from exc
        if not isinstance(data, dict):
            raise UpstreamError(
                response.status_code,
                response.text,
                provider=self.provider_name,
                message=f"{self.provider_name} returned an unexpected response body",
            )
        return data

    async def _stream_lines(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> AsyncIterator[str]:
        """POST ``body`` and yield the decoded response lines as they complete."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_s

        def remaining() -> float:
            return max(deadline - loop.time(), 0.0)

        client = self._get_client()
        request = client.build_request("POST", url, headers=headers, json=body)
        try:
            response = await asyncio.wait_for(client.send(request, stream=True), remaining())
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise self._timeout_error() from None
        except httpx.TransportError as exc:
            raise UpstreamError.network(self.provider_name, exc) from exc

        try:
            if not response.is_success:
                try:
                    raw = await asyncio.wait_for(response.aread(), remaining())
                except (asyncio.TimeoutError, httpx.HTTPError):
                    raw = b""
                raise UpstreamError(
                    response.status_code,
                    raw.decode("utf-8", errors="replace"),
                    provider=self.provider_name,
                )

            decoder = IncrementalLineDecoder()
            reads = response.aiter_bytes()
            while True:
                try:
                    data = await asyncio.wait_for(reads.__anext__(), remaining())
                except StopAsyncIteration:
                    break
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    raise self._timeout_error() from None
                except httpx.TransportError as exc:
                    raise UpstreamError.network(self.provider_name, exc) from exc
                for line in decoder.feed(data):
                    yield line
            for line in decoder.flush():
                yield line
        finally:
            await response.aclose()

    async def _stream_chunks(
        self,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        decoder: StreamDecoder,
    ) -> AsyncIterator[StandardStreamChunk]:
        async with aclosing(self._stream_lines(url, headers, body)) as lines:
            async for line in lines:
                chunk = decoder.consume(line)
                if chunk is not None:
                    yield chunk
                if decoder.finished:
                    break
