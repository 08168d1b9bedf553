"""Ordered failover across generation backends."""

import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from health_assistant.core.errors import (
    DEFAULT_RETRYABLE,
    ErrorCode,
    ProviderChainError,
    ProviderError,
    ProviderFailure
)
from health_assistant.core.models import (
    ChunkType,
    FinishReason,
    HealthCheckResult,
    LLMContext,
    ModelInfo,
    ProviderType,
    StreamChunk
)
from health_assistant.core.providers.base import LLMProvider
from health_assistant.core.registry import DEFAULT_PROVIDER_ORDER, ProviderRegistry

logger = logging.getLogger(__name__)

# Applied to every backend by set_config; anything else goes to the primary only
SAMPLING_KEYS = {"temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty"}


def _parse_code(raw: Optional[str]) -> ErrorCode:
    try:
        return ErrorCode(raw) if raw else ErrorCode.UNKNOWN
    except ValueError:
        return ErrorCode.UNKNOWN


class FallbackChain:
    """
    Tries backends in order until one produces a response.

    The backend that last succeeded is tried first on the next call. Backends
    flagged ``is_last_resort`` are tried last and are never remembered as the
    preferred one. Unavailable backends are skipped, last-resort ones included.
    """

    name = "Fallback Chain"

    def __init__(
        self,
        registry: ProviderRegistry,
        provider_order: Optional[Sequence[ProviderType]] = None
    ):
        self.registry = registry
        self.provider_order: List[ProviderType] = []
        self.last_successful_provider: Optional[ProviderType] = None
        self.failures: List[ProviderFailure] = []
        self.set_provider_order(provider_order or DEFAULT_PROVIDER_ORDER)

    def set_provider_order(self, order: Sequence[ProviderType]) -> None:
        """
        Replace the failover order.

        Raises:
            ValueError: If the order is empty
        """
        normalized: List[ProviderType] = []
        for provider_type in order:
            provider_type = ProviderType(provider_type)
            if provider_type not in normalized:
                normalized.append(provider_type)
        if not normalized:
            raise ValueError("Provider order must name at least one provider")

        self.provider_order = normalized
        if self.last_successful_provider not in normalized:
            self.last_successful_provider = None
        logger.info(f"Provider order set to {[p.value for p in normalized]}")

    def _attempts(self) -> List[Tuple[ProviderType, LLMProvider]]:
        regular: List[Tuple[ProviderType, LLMProvider]] = []
        last_resort: List[Tuple[ProviderType, LLMProvider]] = []
        for provider_type in list(self.provider_order):
            provider = self.registry.get_provider(provider_type)
            if provider.is_last_resort:
                last_resort.append((provider_type, provider))
            else:
                regular.append((provider_type, provider))

        sticky = self.last_successful_provider
        regular.sort(key=lambda item: item[0] != sticky)
        return regular + last_resort

    def _should_try(self, provider_type: ProviderType, provider: LLMProvider) -> bool:
        if provider.is_available():
            return True
        logger.info(f"Provider {provider_type.value} not available, trying next...")
        return False

    def _mark_success(self, provider_type: ProviderType, provider: LLMProvider) -> None:
        if not provider.is_last_resort:
            self.last_successful_provider = provider_type

    async def complete(self, prompt: str, context: LLMContext) -> str:
        """
        Generate a full response from the first backend that succeeds.

        Raises:
            ProviderError: A non-retryable failure from any backend
            ProviderChainError: Every backend failed or none was available
        """
        failures: List[ProviderFailure] = []
        self.failures = failures

        for provider_type, provider in self._attempts():
            if not self._should_try(provider_type, provider):
                continue

            try:
                result = await provider.complete(prompt, context)
            except ProviderError as e:
                failures.append(ProviderFailure(provider=provider_type, code=e.code, message=e.message))
                logger.warning(f"Provider {provider_type.value} failed: {e.code.value}: {e.message}")
                if not e.retryable:
                    raise
                continue
            except Exception as e:
                failures.append(ProviderFailure(
                    provider=provider_type,
                    code=ErrorCode.UNKNOWN,
                    message=str(e) or "Unknown error"
                ))
                logger.warning(f"Provider {provider_type.value} failed unexpectedly: {e}")
                continue

            self._mark_success(provider_type, provider)
            return result

        error = ProviderChainError(failures)
        logger.error(error.message)
        raise error

    async def stream_complete(self, prompt: str, context: LLMContext) -> AsyncIterator[StreamChunk]:
        """
        Stream from the first backend that produces content.

        Once a backend has emitted content it owns the response: its later
        chunks are forwarded as they are, including an error chunk, and no
        other backend is tried. Every chunk is stamped with the producing
        backend and model.
        """
        failures: List[ProviderFailure] = []
        self.failures = failures

        for provider_type, provider in self._attempts():
            if not self._should_try(provider_type, provider):
                continue

            model = provider.config.model
            has_content = False

            def stamp(chunk: StreamChunk) -> StreamChunk:
                return chunk.model_copy(update={"provider": provider_type, "model": model})

            async with aclosing(provider.stream_complete(prompt, context)) as stream:
                try:
                    async for chunk in stream:
                        if chunk.type == ChunkType.CONTENT:
                            if not has_content:
                                has_content = True
                                self._mark_success(provider_type, provider)
                            yield stamp(chunk)
                            continue

                        if chunk.type == ChunkType.DONE:
                            if has_content or chunk.finish_reason == FinishReason.CONTENT_FILTER:
                                yield stamp(chunk)
                                return
                            failures.append(ProviderFailure(
                                provider=provider_type,
                                code=ErrorCode.PROVIDER_ERROR,
                                message="No content in response"
                            ))
                            break

                        # Error chunk
                        if has_content:
                            logger.warning(
                                f"Provider {provider_type.value} failed mid-stream: {chunk.error}"
                            )
                            yield stamp(chunk)
                            return

                        code = _parse_code(chunk.error_code)
                        retryable = DEFAULT_RETRYABLE[code] if chunk.retryable is None else chunk.retryable
                        failures.append(ProviderFailure(
                            provider=provider_type,
                            code=code,
                            message=chunk.error or "Streaming error"
                        ))
                        logger.warning(
                            f"Provider {provider_type.value} streaming failed: {code.value}: {chunk.error}"
                        )
                        if not retryable:
                            yield stamp(chunk)
                            return
                        break
                    else:
                        if has_content:
                            yield stamp(StreamChunk.done(FinishReason.STOP))
                            return
                        failures.append(ProviderFailure(
                            provider=provider_type,
                            code=ErrorCode.PROVIDER_ERROR,
                            message="Stream ended without content"
                        ))
                except Exception as e:
                    if has_content:
                        error = e if isinstance(e, ProviderError) else None
                        yield stamp(StreamChunk.failure(
                            str(e) or "Streaming error",
                            error.code.value if error else ErrorCode.UNKNOWN.value,
                            error.retryable if error else True
                        ))
                        return
                    code = e.code if isinstance(e, ProviderError) else ErrorCode.UNKNOWN
                    failures.append(ProviderFailure(
                        provider=provider_type,
                        code=code,
                        message=str(e) or "Streaming error"
                    ))
                    logger.warning(f"Provider {provider_type.value} streaming raised: {e}")
                    if isinstance(e, ProviderError) and not e.retryable:
                        yield stamp(StreamChunk.failure(e.message, e.code.value, False))
                        return

        error = ProviderChainError(failures)
        logger.error(error.message)
        yield StreamChunk.failure(error.message, ErrorCode.PROVIDER_ERROR.value, retryable=False)

    async def get_chain_status(self) -> List[HealthCheckResult]:
        """Health-check backends in order, stopping after the first available one."""
        results = []
        for provider_type in list(self.provider_order):
            result = await self.registry.get_provider(provider_type).health_check()
            results.append(result)
            if result.available:
                break
        return results

    def is_available(self) -> bool:
        """True if some backend in the order reports itself available."""
        for provider_type, provider in self._attempts():
            if provider.is_available():
                return True
        return False

    async def health_check(self) -> HealthCheckResult:
        for result in await self.get_chain_status():
            if result.available:
                return result
        return HealthCheckResult(
            provider=self.provider_order[0],
            available=False,
            error="No providers available in fallback chain"
        )

    def set_config(self, updates: Dict[str, Any]) -> None:
        """Sampling settings go to every backend, the rest to the primary one."""
        sampling = {k: v for k, v in updates.items() if k in SAMPLING_KEYS}
        specific = {k: v for k, v in updates.items() if k not in SAMPLING_KEYS}

        primary = self.provider_order[0]
        for provider_type in list(self.provider_order):
            merged = dict(sampling)
            if provider_type == primary:
                merged.update(specific)
            if merged:
                self.registry.update_config(provider_type, merged)

    def get_available_models(self) -> List[ModelInfo]:
        return self.registry.get_provider(self.provider_order[0]).get_available_models()
