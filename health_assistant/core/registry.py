"""Registry holding one reusable adapter per backend type."""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from health_assistant.core.models import ProviderConfig, ProviderInfo, ProviderType
from health_assistant.core.providers.base import LLMProvider
from health_assistant.core.providers.gemini_provider import GeminiProvider, default_gemini_config
from health_assistant.core.providers.local_provider import LocalProvider, default_local_config
from health_assistant.core.providers.openai_provider import OpenAIProvider, default_openai_config

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_ORDER: List[ProviderType] = [
    ProviderType.OPENAI,
    ProviderType.GEMINI,
    ProviderType.LOCAL,
]


class ProviderRegistry:
    """
    Builds adapters lazily and hands out the same instance on every lookup.

    Passing a config to ``get_provider`` replaces the cached adapter. Default
    configs (used when an adapter is first built without one) can be seeded
    per type, which is how application settings reach the adapters.
    """

    def __init__(
        self,
        default_configs: Optional[Dict[ProviderType, ProviderConfig]] = None,
        request_timeout_s: float = 60.0
    ):
        self._lock = threading.Lock()
        self._providers: Dict[ProviderType, LLMProvider] = {}
        self._default_configs: Dict[ProviderType, ProviderConfig] = dict(default_configs or {})
        self.request_timeout_s = request_timeout_s

    @classmethod
    def from_settings(cls, settings: Any) -> "ProviderRegistry":
        """Seed per-backend defaults from application settings."""
        shared = {
            "temperature": settings.llm_temperature,
            "max_tokens": settings.llm_max_tokens,
        }
        configs = {
            ProviderType.OPENAI: default_openai_config(
                model=settings.openai_model,
                api_key=settings.openai_api_key,
                endpoint=settings.openai_base_url,
                **shared
            ),
            ProviderType.GEMINI: default_gemini_config(
                model=settings.gemini_model,
                api_key=settings.gemini_api_key,
                **shared
            ),
            ProviderType.LOCAL: default_local_config(
                model=settings.local_model,
                local_model_path=settings.local_model_path,
                temperature=settings.llm_temperature
            ),
        }
        return cls(default_configs=configs, request_timeout_s=settings.request_timeout_s)

    def get_provider(
        self,
        provider_type: ProviderType,
        config: Optional[ProviderConfig] = None
    ) -> LLMProvider:
        """
        Return the cached adapter for a backend, building it if needed.

        Args:
            provider_type: Backend to look up
            config: When given, a fresh adapter is built with it and cached

        Returns:
            Adapter instance

        Raises:
            ValueError: If the backend type is unknown
        """
        provider_type = ProviderType(provider_type)
        with self._lock:
            provider = self._providers.get(provider_type)
            if provider is None or config is not None:
                provider = self._create(provider_type, config or self._default_configs.get(provider_type))
                self._providers[provider_type] = provider
            return provider

    def _create(self, provider_type: ProviderType, config: Optional[ProviderConfig]) -> LLMProvider:
        if provider_type == ProviderType.OPENAI:
            return OpenAIProvider(config, timeout_s=self.request_timeout_s)
        if provider_type == ProviderType.GEMINI:
            return GeminiProvider(config, timeout_s=self.request_timeout_s)
        if provider_type == ProviderType.LOCAL:
            return LocalProvider(config)
        raise ValueError(f"Unknown provider type: {provider_type}")

    def register(self, provider: LLMProvider) -> None:
        """Replace the cached adapter for ``provider.provider_type``."""
        with self._lock:
            self._providers[provider.provider_type] = provider
        logger.info(f"Registered {provider.provider_type.value} provider {type(provider).__name__}")

    def list_provider_info(self) -> List[ProviderInfo]:
        infos = []
        for provider_type in ProviderType:
            provider = self.get_provider(provider_type)
            infos.append(ProviderInfo(
                type=provider_type,
                name=provider.name,
                description=provider.description,
                models=provider.get_available_models(),
                is_configured=provider.is_configured,
                requires_api_key=provider.requires_api_key,
                supports_streaming=provider.supports_streaming,
                supports_offline=provider.supports_offline
            ))
        return infos

    def update_config(self, provider_type: ProviderType, updates: Dict[str, Any]) -> LLMProvider:
        """Merge config updates into a backend; effective from its next call."""
        provider = self.get_provider(provider_type)
        provider.set_config(updates)
        return provider

    def is_provider_available(self, provider_type: ProviderType) -> bool:
        try:
            return self.get_provider(provider_type).is_available()
        except Exception as e:
            logger.warning(f"Availability check for {provider_type} failed: {e}")
            return False

    def get_best_available(
        self,
        preferred_order: Optional[Sequence[ProviderType]] = None
    ) -> Optional[LLMProvider]:
        """First available backend in ``preferred_order``, or None."""
        for provider_type in preferred_order or DEFAULT_PROVIDER_ORDER:
            if self.is_provider_available(provider_type):
                return self.get_provider(provider_type)
        return None

    def reset(self) -> None:
        """Drop every cached adapter; the next lookup rebuilds from defaults."""
        with self._lock:
            self._providers.clear()
        logger.info("Provider registry reset")
