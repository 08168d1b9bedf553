"""Uniform capability interface implemented by every generation backend."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from health_assistant.core.catalog import get_models
from health_assistant.core.models import (
    HealthCheckResult,
    LLMContext,
    ModelInfo,
    ProviderConfig,
    ProviderType,
    StreamChunk
)

logger = logging.getLogger(__name__)


class LLMProvider(ABC):
    """
    Adapter around one concrete generation backend.

    The adapter owns exactly one live config and the authenticated client
    built from it. Both are replaced together under a lock, so a call always
    sees a matching config/client pair.
    """

    provider_type: ProviderType
    name: str
    description: str = ""
    requires_api_key: bool = True
    supports_streaming: bool = True
    supports_offline: bool = False
    # Never preferred by the chain, only used once everything else failed
    is_last_resort: bool = False

    def __init__(self, config: ProviderConfig):
        if config.provider != self.provider_type:
            raise ValueError(
                f"{type(self).__name__} cannot use a {config.provider.value} config"
            )
        self._lock = threading.Lock()
        self._config = config
        self._client: Optional[Any] = self._build_client(config)
        self._last_health_ok: Optional[bool] = None

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def is_configured(self) -> bool:
        return bool(self._config.api_key) or not self.requires_api_key

    def set_config(self, updates: Dict[str, Any]) -> None:
        """
        Merge ``updates`` into the current config.

        A changed credential or endpoint rebuilds the client before the swap.

        Args:
            updates: Partial ProviderConfig fields

        Raises:
            pydantic.ValidationError: If the merged config is invalid
        """
        current = self._config
        new_config = current.merged(updates)
        rebuild = (
            new_config.api_key != current.api_key
            or new_config.endpoint != current.endpoint
        )
        new_client = self._build_client(new_config) if rebuild else self._client

        with self._lock:
            self._config, self._client = new_config, new_client
            if rebuild:
                self._last_health_ok = None

        logger.info(
            f"Updated {self.provider_type.value} config "
            f"(model={new_config.model}, client_rebuilt={rebuild})"
        )

    def get_available_models(self) -> List[ModelInfo]:
        return get_models(self.provider_type)

    def is_available(self) -> bool:
        """Credential configured and the last health check did not fail."""
        _, client = self._snapshot()
        return client is not None and self._last_health_ok is not False

    @abstractmethod
    async def complete(self, prompt: str, context: LLMContext) -> str:
        """Single-shot generation. Raises ProviderError on failure."""

    @abstractmethod
    def stream_complete(self, prompt: str, context: LLMContext) -> AsyncIterator[StreamChunk]:
        """Incremental generation. Failures end the stream with an error chunk."""

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Minimal real round trip. Never raises."""

    def _build_client(self, config: ProviderConfig) -> Optional[Any]:
        """Create the authenticated backend client, or None when unconfigured."""
        return None

    def _snapshot(self) -> Tuple[ProviderConfig, Optional[Any]]:
        with self._lock:
            return self._config, self._client

    def _record_health(self, ok: bool) -> None:
        self._last_health_ok = ok
