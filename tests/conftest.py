"""Pytest configuration and fixtures."""

from datetime import date, timedelta
from typing import AsyncIterator, List, Optional

import pytest

from health_assistant.core.errors import ProviderError
from health_assistant.core.health_source import InMemoryHealthDataSource
from health_assistant.core.models import (
    BaselineMetrics,
    BiometricSnapshot,
    HealthCheckResult,
    HealthCondition,
    HealthProfile,
    LLMContext,
    Medication,
    ProviderConfig,
    ProviderType,
    StreamChunk
)
from health_assistant.core.providers.base import LLMProvider
from health_assistant.core.registry import ProviderRegistry
from health_assistant.db.conversation_store import InMemoryConversationStore


class FakeProvider(LLMProvider):
    """Scripted backend that records how it was called."""

    requires_api_key = False

    def __init__(
        self,
        provider_type: ProviderType,
        available: bool = True,
        response: str = "ok",
        error: Optional[ProviderError] = None,
        chunks: Optional[List[StreamChunk]] = None,
        model: str = "fake-model",
        last_resort: bool = False
    ):
        self.provider_type = provider_type
        self.name = f"Fake {provider_type.value}"
        self.is_last_resort = last_resort
        super().__init__(ProviderConfig(provider=provider_type, model=model))
        self.available = available
        self.response = response
        self.error = error
        self.chunks = chunks if chunks is not None else [
            StreamChunk.delta(response),
            StreamChunk.done(),
        ]
        self.complete_calls = 0
        self.stream_calls = 0
        self.chunks_pulled = 0
        self.stream_closed = False
        self.prompts: List[str] = []
        self.contexts: List[LLMContext] = []

    def is_available(self) -> bool:
        return self.available

    async def complete(self, prompt: str, context: LLMContext) -> str:
        self.complete_calls += 1
        self.prompts.append(prompt)
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return self.response

    async def stream_complete(self, prompt: str, context: LLMContext) -> AsyncIterator[StreamChunk]:
        self.stream_calls += 1
        self.prompts.append(prompt)
        self.contexts.append(context)
        try:
            for chunk in self.chunks:
                self.chunks_pulled += 1
                yield chunk
        finally:
            self.stream_closed = True

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(
            provider=self.provider_type,
            available=self.available,
            latency_ms=1.0
        )


def make_registry(*providers: LLMProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    return registry


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def health_source() -> InMemoryHealthDataSource:
    return InMemoryHealthDataSource()


@pytest.fixture
def sample_profile() -> HealthProfile:
    return HealthProfile(
        user_id="user_123",
        baseline_metrics=BaselineMetrics(age=42, sex="female", height_cm=168, weight_kg=64.5),
        conditions=[
            HealthCondition(name="Hypertension", severity="moderate", notes="Diagnosed 2021", is_managed=True)
        ],
        medications=[
            Medication(name="Lisinopril", dosage="10mg", frequency="daily", purpose="blood pressure")
        ]
    )


@pytest.fixture
def sample_biometrics() -> List[BiometricSnapshot]:
    start = date(2024, 5, 1)
    steps = [6000, 7000, 8000, 9000]
    return [
        BiometricSnapshot(
            date=start + timedelta(days=i),
            steps=value,
            sleep_hours=7.0 + i * 0.5,
            resting_heart_rate=60 + i if i % 2 == 0 else None,
            exercise_minutes=30
        )
        for i, value in enumerate(steps)
    ]
