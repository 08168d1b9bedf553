"""OpenAI chat-completions backend."""

import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from health_assistant.core.catalog import default_model
from health_assistant.core.errors import ErrorCode, ProviderError
from health_assistant.core.models import (
    FinishReason,
    HealthCheckResult,
    LLMContext,
    ProviderConfig,
    ProviderType,
    StreamChunk
)
from health_assistant.core.prompt_builder import build_system_prompt
from health_assistant.core.providers.base import LLMProvider

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def default_openai_config(**overrides: Any) -> ProviderConfig:
    data: Dict[str, Any] = {
        "provider": ProviderType.OPENAI,
        "model": default_model(ProviderType.OPENAI).id,
        "temperature": 0.7,
        "max_tokens": 2048,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ProviderConfig.model_validate(data)


class OpenAIProvider(LLMProvider):
    """Sends role-tagged message arrays to the OpenAI Chat Completions API."""

    provider_type = ProviderType.OPENAI
    name = "OpenAI"
    description = "GPT-4o and GPT-3.5 models. Best quality responses."

    def __init__(self, config: Optional[ProviderConfig] = None, timeout_s: float = 60.0):
        self.timeout_s = timeout_s
        super().__init__(config or default_openai_config())

    def _build_client(self, config: ProviderConfig) -> Optional[AsyncOpenAI]:
        if not config.api_key:
            return None
        return AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.endpoint,
            timeout=self.timeout_s,
            max_retries=0  # Failover is the chain's job
        )

    async def health_check(self) -> HealthCheckResult:
        config, client = self._snapshot()
        if client is None:
            return HealthCheckResult(
                provider=self.provider_type,
                available=False,
                error="API key not configured"
            )

        start = time.perf_counter()
        try:
            await client.chat.completions.create(
                model=config.model,
                messages=[{"role": "user", "content": "Hi"}],
                max_tokens=5
            )
        except Exception as e:
            self._record_health(False)
            logger.warning(f"OpenAI health check failed: {e}")
            return HealthCheckResult(
                provider=self.provider_type,
                available=False,
                latency_ms=(time.perf_counter() - start) * 1000,
                error=str(e) or "Unknown error"
            )

        self._record_health(True)
        return HealthCheckResult(
            provider=self.provider_type,
            available=True,
            latency_ms=(time.perf_counter() - start) * 1000
        )

    async def complete(self, prompt: str, context: LLMContext) -> str:
        """
        Generate a full response.

        Args:
            prompt: Sanitized user message
            context: Health context and history for this turn

        Returns:
            Generated text

        Raises:
            ProviderError: On any backend failure
        """
        config, client = self._snapshot()
        if client is None:
            raise ProviderError(
                "OpenAI client not initialized. Please configure API key.",
                ErrorCode.API_KEY_MISSING,
                self.provider_type
            )

        messages = self._build_messages(build_system_prompt(context), prompt, context)

        try:
            response = await client.chat.completions.create(
                model=config.model,
                messages=messages,
                **self._sampling_params(config)
            )
        except Exception as e:
            error = self._translate_error(e)
            logger.warning(f"OpenAI completion failed: {error.code.value}: {error.message}")
            raise error from e

        choice = response.choices[0] if response.choices else None
        if choice is not None and choice.finish_reason == "content_filter":
            raise ProviderError(
                "Content was filtered by safety settings.",
                ErrorCode.CONTENT_FILTERED,
                self.provider_type
            )

        content = choice.message.content if choice is not None and choice.message else None
        if not content:
            raise ProviderError(
                "No content in response",
                ErrorCode.PROVIDER_ERROR,
                self.provider_type,
                retryable=True
            )

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(f"OpenAI completion used {usage.total_tokens} tokens")
        return content

    async def stream_complete(self, prompt: str, context: LLMContext) -> AsyncIterator[StreamChunk]:
        config, client = self._snapshot()
        if client is None:
            yield StreamChunk.failure(
                "OpenAI client not initialized. Please configure API key.",
                ErrorCode.API_KEY_MISSING.value,
                retryable=False
            )
            return

        messages = self._build_messages(build_system_prompt(context), prompt, context)

        try:
            stream = await client.chat.completions.create(
                model=config.model,
                messages=messages,
                stream=True,
                **self._sampling_params(config)
            )
        except Exception as e:
            error = self._translate_error(e)
            logger.warning(f"OpenAI stream failed to start: {error.code.value}: {error.message}")
            yield StreamChunk.failure(error.message, error.code.value, error.retryable)
            return

        finished = False
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta is not None and choice.delta.content:
                    yield StreamChunk.delta(choice.delta.content)
                if choice.finish_reason:
                    finished = True
                    yield StreamChunk.done(
                        _FINISH_REASONS.get(choice.finish_reason, FinishReason.STOP)
                    )
                    break
            if not finished:
                yield StreamChunk.done(FinishReason.STOP)
        except Exception as e:
            error = self._translate_error(e)
            logger.warning(f"OpenAI stream interrupted: {error.code.value}: {error.message}")
            yield StreamChunk.failure(error.message or "Streaming error", error.code.value, error.retryable)
        finally:
            await stream.close()

    def _build_messages(
        self,
        system_prompt: str,
        user_prompt: str,
        context: LLMContext
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": system_prompt}]
        for message in context.recent_history():
            messages.append({"role": message.role.value, "content": message.content})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    @staticmethod
    def _sampling_params(config: ProviderConfig) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }
        if config.top_p is not None:
            params["top_p"] = config.top_p
        if config.frequency_penalty is not None:
            params["frequency_penalty"] = config.frequency_penalty
        if config.presence_penalty is not None:
            params["presence_penalty"] = config.presence_penalty
        return params

    def _translate_error(self, error: Exception) -> ProviderError:
        """Map OpenAI SDK exceptions onto the shared error taxonomy."""
        if isinstance(error, ProviderError):
            return error

        message = str(error) or "Unknown error"

        if isinstance(error, openai.AuthenticationError):
            return ProviderError("Invalid API key", ErrorCode.API_KEY_INVALID, self.provider_type)

        if isinstance(error, openai.RateLimitError):
            return ProviderError(
                "Rate limit exceeded. Please try again later.",
                ErrorCode.RATE_LIMITED,
                self.provider_type
            )

        if isinstance(error, openai.BadRequestError):
            code = getattr(error, "code", None) or ""
            lowered = message.lower()
            if code == "context_length_exceeded" or "context_length" in lowered or "maximum context length" in lowered:
                return ProviderError(
                    "Message too long. Please shorten your message.",
                    ErrorCode.CONTEXT_TOO_LONG,
                    self.provider_type
                )
            if code == "content_filter" or "content_filter" in lowered or "content management policy" in lowered:
                return ProviderError(
                    "Content was filtered by safety settings.",
                    ErrorCode.CONTENT_FILTERED,
                    self.provider_type
                )

        if isinstance(error, openai.NotFoundError):
            return ProviderError(
                f"Model {self._config.model} is not available",
                ErrorCode.MODEL_NOT_AVAILABLE,
                self.provider_type
            )

        if isinstance(error, (openai.APIConnectionError, ConnectionError, TimeoutError)):
            return ProviderError(
                "Network error. Please check your connection.",
                ErrorCode.NETWORK_ERROR,
                self.provider_type
            )

        return ProviderError(message, ErrorCode.PROVIDER_ERROR, self.provider_type, retryable=True)
