from .anthropic_provider import AnthropicProvider
from .base import LLMProvider
from .openai_provider import OpenAIProvider

__all__ = ["AnthropicProvider", "LLMProvider", "OpenAIProvider"]
