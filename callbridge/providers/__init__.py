"""LLM provider abstraction module."""

from callbridge.providers.base import LLMProvider, LLMResponse
from callbridge.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
