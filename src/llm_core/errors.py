"""Error types raised by the provider layer."""

from __future__ import annotations

from http import HTTPStatus


class ConfigurationError(ValueError):
    """Invalid or missing configuration. Raised at construction and never retried."""


class UpstreamError(RuntimeError):
    """A failed call to an upstream LLM API.

    ``status`` is the HTTP status of the upstream response, or 0 when the call never
    produced one (network failure, timeout). ``body`` is the raw response text.
    """

    def __init__(self, status: int, body: str = "", *, provider: str = "", message: str | None = None) -> None:
        self.status = status
        self.body = body
        self.provider = provider
        super().__init__(message or self._default_message(status, body, provider))

    @staticmethod
    def _default_message(status: int, body: str, provider: str) -> str:
        label = f"{provider} API error" if provider else "Upstream API error"
        try:
            phrase = HTTPStatus(status).phrase
        except ValueError:
            phrase = ""
        code = f"{status} {phrase}".strip()
        return f"{label} ({code}): {body}" if body else f"{label} ({code})"

    @classmethod
    def timeout(cls, provider: str, seconds: float) -> UpstreamError:
        return cls(0, provider=provider, message=f"{provider} request timeout after {seconds:g}s")

    @classmethod
    def network(cls, provider: str, exc: BaseException) -> UpstreamError:
        return cls(0, provider=provider, message=f"{provider} network error: {exc}")


__all__ = ["ConfigurationError", "UpstreamError"]
