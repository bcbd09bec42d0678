"""Provider-neutral LLM models, upstream providers and the retry helper."""

from .config import ProviderConfig, provider_config_from_env
from .core import create_provider, create_provider_from_env
from .errors import ConfigurationError, UpstreamError
from .models import (
    StandardCompletionRequest,
    StandardCompletionResponse,
    StandardMessage,
    StandardStreamChunk,
    Usage,
    text_from_content,
)
from .providers import AnthropicProvider, LLMProvider, OpenAIProvider
from .retry import RetryOptions, is_retryable_error, log_error, retry_with_backoff

__all__ = [
    "AnthropicProvider",
    "ConfigurationError",
    "LLMProvider",
    "OpenAIProvider",
    "ProviderConfig",
    "RetryOptions",
    "StandardCompletionRequest",
    "StandardCompletionResponse",
    "StandardMessage",
    "StandardStreamChunk",
    "UpstreamError",
    "Usage",
    "create_provider",
    "create_provider_from_env",
    "is_retryable_error",
    "log_error",
    "provider_config_from_env",
    "retry_with_backoff",
    "text_from_content",
]
