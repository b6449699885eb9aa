"""Adapters from an LLM provider to the text-generation and embedding boundaries."""

from __future__ import annotations

from memgate.logging import get_logger
from memgate.providers.base import LLMProvider

logger = get_logger(__name__)


class ProviderTextGenerator:
    """``generate(prompt, max_tokens)`` on top of a chat provider.

    Error responses and empty completions become ``None`` so callers can
    treat them as "skip this step".
    """

    def __init__(self, provider: LLMProvider, model: str | None = None, temperature: float = 0.2) -> None:
        self.provider = provider
        self.model = model
        self.temperature = temperature

    async def generate(self, prompt: str, max_tokens: int) -> str | None:
        response = await self.provider.chat(
            messages=[{"role": "user", "content": prompt}],
            model=self.model,
            max_tokens=max_tokens,
            temperature=self.temperature,
        )
        if response.is_error:
            logger.warning("text_generation_error", model=self.model or self.provider.get_default_model())
            return None
        content = (response.content or "").strip()
        return content or None


class ProviderEmbedder:
    def __init__(self, provider: LLMProvider, model: str | None = None) -> None:
        self.provider = provider
        self.model = model

    async def embed(self, text: str) -> list[float] | None:
        return await self.provider.embed(text, model=self.model)
