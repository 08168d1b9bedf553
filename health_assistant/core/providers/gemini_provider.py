"""Google Gemini backend (google-genai SDK)."""

import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from health_assistant.core.catalog import default_model
from health_assistant.core.errors import ErrorCode, ProviderError
from health_assistant.core.models import (
    FinishReason,
    HealthCheckResult,
    LLMContext,
    MessageRole,
    ProviderConfig,
    ProviderType,
    StreamChunk
)
from health_assistant.core.prompt_builder import build_system_prompt
from health_assistant.core.providers.base import LLMProvider

logger = logging.getLogger(__name__)

_BLOCKED_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}


def default_gemini_config(**overrides: Any) -> ProviderConfig:
    data: Dict[str, Any] = {
        "provider": ProviderType.GEMINI,
        "model": default_model(ProviderType.GEMINI).id,
        "temperature": 0.7,
        "max_tokens": 2048,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ProviderConfig.model_validate(data)


class GeminiProvider(LLMProvider):
    """
    Gemini adapter.

    Gemini gets one concatenated prompt: the system prompt as instructions,
    the recent dialogue, then ``User:`` / ``Assistant:`` framing.
    """

    provider_type = ProviderType.GEMINI
    name = "Google Gemini"
    description = "Gemini Flash and Pro models. Fast with a large context window."

    def __init__(self, config: Optional[ProviderConfig] = None, timeout_s: float = 60.0):
        self.timeout_s = timeout_s
        super().__init__(config or default_gemini_config())

    def _build_client(self, config: ProviderConfig) -> Optional[genai.Client]:
        if not config.api_key:
            return None
        http_options = types.HttpOptions(
            base_url=config.endpoint,
            timeout=int(self.timeout_s * 1000)  # milliseconds
        )
        return genai.Client(api_key=config.api_key, http_options=http_options)

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
            await client.aio.models.generate_content(model=config.model, contents="Hi")
        except Exception as e:
            self._record_health(False)
            logger.warning(f"Gemini health check failed: {e}")
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
        config, client = self._snapshot()
        if client is None:
            raise ProviderError(
                "Gemini client not initialized. Please configure API key.",
                ErrorCode.API_KEY_MISSING,
                self.provider_type
            )

        full_prompt = self.build_prompt(build_system_prompt(context), prompt, context)

        try:
            response = await client.aio.models.generate_content(
                model=config.model,
                contents=full_prompt,
                config=self._generation_config(config)
            )
        except Exception as e:
            error = self._translate_error(e)
            logger.warning(f"Gemini completion failed: {error.code.value}: {error.message}")
            raise error from e

        if _finish_reason_name(response) in _BLOCKED_FINISH_REASONS:
            raise ProviderError(
                "Content was filtered by safety settings.",
                ErrorCode.CONTENT_FILTERED,
                self.provider_type
            )

        content = response.text
        if not content:
            raise ProviderError(
                "No content in response",
                ErrorCode.PROVIDER_ERROR,
                self.provider_type,
                retryable=True
            )
        return content

    async def stream_complete(self, prompt: str, context: LLMContext) -> AsyncIterator[StreamChunk]:
        config, client = self._snapshot()
        if client is None:
            yield StreamChunk.failure(
                "Gemini client not initialized. Please configure API key.",
                ErrorCode.API_KEY_MISSING.value,
                retryable=False
            )
            return

        full_prompt = self.build_prompt(build_system_prompt(context), prompt, context)

        try:
            stream = await client.aio.models.generate_content_stream(
                model=config.model,
                contents=full_prompt,
                config=self._generation_config(config)
            )
        except Exception as e:
            error = self._translate_error(e)
            logger.warning(f"Gemini stream failed to start: {error.code.value}: {error.message}")
            yield StreamChunk.failure(error.message, error.code.value, error.retryable)
            return

        finish_reason = FinishReason.STOP
        try:
            async for chunk in stream:
                text = chunk.text
                if text:
                    yield StreamChunk.delta(text)
                if _finish_reason_name(chunk) in _BLOCKED_FINISH_REASONS:
                    finish_reason = FinishReason.CONTENT_FILTER
                elif _finish_reason_name(chunk) == "MAX_TOKENS":
                    finish_reason = FinishReason.LENGTH
            yield StreamChunk.done(finish_reason)
        except Exception as e:
            error = self._translate_error(e)
            logger.warning(f"Gemini stream interrupted: {error.code.value}: {error.message}")
            yield StreamChunk.failure(error.message or "Streaming error", error.code.value, error.retryable)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def build_prompt(self, system_prompt: str, user_prompt: str, context: LLMContext) -> str:
        """Flatten instructions, history and the new message into one prompt."""
        parts = [f"Instructions for this conversation:\n{system_prompt}\n\n"]

        history = context.recent_history()
        if history:
            parts.append("Previous conversation:\n")
            for message in history:
                speaker = "User" if message.role == MessageRole.USER else "Assistant"
                parts.append(f"{speaker}: {message.content}\n")
            parts.append("\n")

        parts.append(f"User: {user_prompt}\n\nAssistant:")
        return "".join(parts)

    @staticmethod
    def _generation_config(config: ProviderConfig) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_tokens,
            top_p=config.top_p,
            frequency_penalty=config.frequency_penalty,
            presence_penalty=config.presence_penalty
        )

    def _translate_error(self, error: Exception) -> ProviderError:
        """Map google-genai failures onto the shared error taxonomy."""
        if isinstance(error, ProviderError):
            return error

        message = str(error) or "Unknown error"
        lowered = message.lower()
        status = getattr(error, "code", None) if isinstance(error, genai_errors.APIError) else None

        if status in (401, 403) or "api_key_invalid" in lowered or "api key" in lowered:
            return ProviderError("Invalid API key", ErrorCode.API_KEY_INVALID, self.provider_type)

        if status == 429 or "resource_exhausted" in lowered or "rate_limit" in lowered or "quota" in lowered:
            return ProviderError(
                "Rate limit exceeded. Please try again later.",
                ErrorCode.RATE_LIMITED,
                self.provider_type
            )

        if "safety" in lowered or "blocked" in lowered:
            return ProviderError(
                "Content was filtered by safety settings.",
                ErrorCode.CONTENT_FILTERED,
                self.provider_type
            )

        if "token count" in lowered or "too long" in lowered or "exceeds the maximum" in lowered:
            return ProviderError(
                "Message too long. Please shorten your message.",
                ErrorCode.CONTEXT_TOO_LONG,
                self.provider_type
            )

        if status == 404:
            return ProviderError(
                f"Model {self._config.model} is not available",
                ErrorCode.MODEL_NOT_AVAILABLE,
                self.provider_type
            )

        if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
            return ProviderError(
                "Network error. Please check your connection.",
                ErrorCode.NETWORK_ERROR,
                self.provider_type
            )

        return ProviderError(message, ErrorCode.PROVIDER_ERROR, self.provider_type, retryable=True)


def _finish_reason_name(response: Any) -> Optional[str]:
    candidates = getattr(response, "candidates", None)
    if not candidates:
        return None
    reason = getattr(candidates[0], "finish_reason", None)
    if reason is None:
        return None
    return getattr(reason, "name", str(reason))
