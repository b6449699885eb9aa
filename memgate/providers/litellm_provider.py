"""LiteLLM provider implementation for multi-provider support."""

import asyncio
import time
from typing import Any

import litellm
from litellm import acompletion, aembedding

from memgate.logging import get_logger, mask_secret
from memgate.providers.base import LLMProvider, LLMResponse

logger = get_logger("memgate.providers.litellm")


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Used by the consolidation worker for summarization and fact extraction,
    and optionally for query/fact embeddings. Calls never raise: failures come
    back as ``LLMResponse(finish_reason="error")`` or ``None`` embeddings.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-haiku-4-5",
        embedding_model: str | None = None,
        resilience_config: Any | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.embedding_model = embedding_model

        # Resilience: timeout / retry / circuit-breaker
        self._resilience = resilience_config  # ResilienceConfig or None
        self._consecutive_failures: int = 0
        self._circuit_open_until: float = 0.0

        if api_key:
            logger.info("provider_initialized", model=default_model, api_key=mask_secret(api_key))

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers
        litellm.drop_params = True

    def _check_circuit_breaker(self) -> str | None:
        """Return an error message if the circuit is open, else None."""
        rc = self._resilience
        if not rc or rc.circuit_breaker_threshold <= 0:
            return None
        if self._consecutive_failures < rc.circuit_breaker_threshold:
            return None
        now = time.monotonic()
        if now < self._circuit_open_until:
            return (
                f"Circuit breaker open: {self._consecutive_failures} consecutive failures. "
                f"Retry after {int(self._circuit_open_until - now)}s cooldown."
            )
        # Cooldown expired → half-open: allow one probe attempt
        return None

    def _record_result(self, success: bool) -> None:
        """Update circuit-breaker counters after a call."""
        rc = self._resilience
        if not rc or rc.circuit_breaker_threshold <= 0:
            return
        if success:
            self._consecutive_failures = 0
            self._circuit_open_until = 0.0
        else:
            self._consecutive_failures += 1
            if self._consecutive_failures >= rc.circuit_breaker_threshold:
                self._circuit_open_until = time.monotonic() + rc.circuit_breaker_cooldown
                logger.warning(
                    "circuit_breaker_opened",
                    failures=self._consecutive_failures,
                    cooldown=rc.circuit_breaker_cooldown,
                )

    def _mask_error(self, error_msg: str) -> str:
        # Mask any API keys that may appear in exception messages
        if self.api_key and self.api_key in error_msg:
            error_msg = error_msg.replace(self.api_key, mask_secret(self.api_key))
        return error_msg

    def _base_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    async def _call(self, coro_factory: Any, kwargs: dict[str, Any]) -> Any:
        rc = self._resilience
        if rc:
            kwargs["request_timeout"] = rc.timeout
            kwargs["num_retries"] = rc.max_retries
        safety_timeout = (rc.timeout + 30) if rc else None
        coro = coro_factory(**kwargs)
        if safety_timeout:
            return await asyncio.wait_for(coro, timeout=safety_timeout)
        return await coro

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.2,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model identifier (e.g., 'anthropic/claude-haiku-4-5').
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.

        Returns:
            LLMResponse with content, or finish_reason="error" on failure.
        """
        model = model or self.default_model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max(1, max_tokens),
            "temperature": temperature,
            **self._base_kwargs(),
        }

        try:
            cb_error = self._check_circuit_breaker()
            if cb_error:
                return LLMResponse(content=f"Error calling LLM: {cb_error}", finish_reason="error")

            response = await self._call(acompletion, kwargs)
            self._record_result(True)
            return self._parse_response(response)
        except asyncio.TimeoutError:
            self._record_result(False)
            logger.error("llm_call_timeout", model=model)
            return LLMResponse(
                content="Error calling LLM: request timed out",
                finish_reason="error",
            )
        except Exception as e:
            self._record_result(False)
            error_msg = self._mask_error(str(e))
            logger.error("llm_call_failed", model=model, error=error_msg)
            return LLMResponse(
                content=f"Error calling LLM: {error_msg}",
                finish_reason="error",
            )

    async def embed(self, text: str, model: str | None = None) -> list[float] | None:
        model = model or self.embedding_model
        if not model or not text:
            return None
        if self._check_circuit_breaker():
            return None
        kwargs: dict[str, Any] = {"model": model, "input": [text], **self._base_kwargs()}
        try:
            response = await self._call(aembedding, kwargs)
        except asyncio.TimeoutError:
            self._record_result(False)
            logger.warning("embedding_timeout", model=model)
            return None
        except Exception as e:
            self._record_result(False)
            logger.warning("embedding_failed", model=model, error=self._mask_error(str(e)))
            return None
        self._record_result(True)
        return self._parse_embedding(response)

    @staticmethod
    def _value(obj: Any, key: str, default: Any = None) -> Any:
        if isinstance(obj, dict):
            return obj.get(key, default)
        return getattr(obj, key, default)

    @classmethod
    def _parse_embedding(cls, response: Any) -> list[float] | None:
        data = cls._value(response, "data") or []
        if not data:
            return None
        vector = cls._value(data[0], "embedding")
        if not isinstance(vector, list) or not vector:
            return None
        return [float(x) for x in vector]

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
