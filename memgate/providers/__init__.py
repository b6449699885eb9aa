"""LLM provider abstraction module."""

from memgate.providers.base import LLMProvider, LLMResponse
from memgate.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
