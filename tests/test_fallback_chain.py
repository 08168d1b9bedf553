"""Tests for ordered failover across providers."""

import pytest

from health_assistant.core.errors import ErrorCode, ProviderChainError, ProviderError
from health_assistant.core.fallback_chain import FallbackChain
from health_assistant.core.models import (
    ChunkType,
    FinishReason,
    LLMContext,
    ProviderType,
    StreamChunk
)
from health_assistant.core.providers.local_provider import LocalProvider

from conftest import FakeProvider, make_registry

OPENAI = ProviderType.OPENAI
GEMINI = ProviderType.GEMINI
LOCAL = ProviderType.LOCAL


def _rate_limited():
    return ProviderError("Rate limit exceeded", ErrorCode.RATE_LIMITED, OPENAI)


async def _collect(iterator):
    return [chunk async for chunk in iterator]


@pytest.mark.asyncio
async def test_complete_fails_over_and_becomes_sticky():
    """A is rate limited, B answers; B is tried first on the next call."""
    a = FakeProvider(OPENAI, error=_rate_limited())
    b = FakeProvider(GEMINI, response="Hello")
    local = LocalProvider(word_delay=0)
    chain = FallbackChain(make_registry(a, b, local), [OPENAI, GEMINI, LOCAL])

    assert await chain.complete("hi", LLMContext()) == "Hello"
    assert chain.last_successful_provider == GEMINI
    assert [f.provider for f in chain.failures] == [OPENAI]
    assert chain.failures[0].code == ErrorCode.RATE_LIMITED

    assert await chain.complete("again", LLMContext()) == "Hello"
    assert a.complete_calls == 1
    assert b.complete_calls == 2
    assert chain.failures == []


@pytest.mark.asyncio
async def test_complete_stops_after_first_success():
    a = FakeProvider(OPENAI, response="first")
    b = FakeProvider(GEMINI, response="second")
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    assert await chain.complete("hi", LLMContext()) == "first"
    assert b.complete_calls == 0


@pytest.mark.asyncio
async def test_complete_non_retryable_raises_immediately():
    """Content filtering is a policy decision; no other backend is asked."""
    a = FakeProvider(OPENAI, error=ProviderError("Filtered", ErrorCode.CONTENT_FILTERED, OPENAI))
    b = FakeProvider(GEMINI, response="would answer")
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    with pytest.raises(ProviderError) as exc_info:
        await chain.complete("hi", LLMContext())

    assert exc_info.value.code == ErrorCode.CONTENT_FILTERED
    assert a.complete_calls == 1
    assert b.complete_calls == 0


@pytest.mark.asyncio
async def test_complete_single_backend_content_filtered_called_once():
    a = FakeProvider(OPENAI, error=ProviderError("Filtered", ErrorCode.CONTENT_FILTERED, OPENAI))
    chain = FallbackChain(make_registry(a), [OPENAI])

    with pytest.raises(ProviderError):
        await chain.complete("hi", LLMContext())

    assert a.complete_calls == 1


@pytest.mark.asyncio
async def test_complete_skips_unavailable():
    a = FakeProvider(OPENAI, available=False)
    b = FakeProvider(GEMINI, response="from b")
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    assert await chain.complete("hi", LLMContext()) == "from b"
    assert a.complete_calls == 0


@pytest.mark.asyncio
async def test_complete_all_failed_aggregates_messages():
    a = FakeProvider(OPENAI, error=_rate_limited())
    b = FakeProvider(GEMINI, error=ProviderError("Network down", ErrorCode.NETWORK_ERROR, GEMINI))
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    with pytest.raises(ProviderChainError) as exc_info:
        await chain.complete("hi", LLMContext())

    message = str(exc_info.value)
    assert message.startswith("All providers failed:")
    assert "openai: Rate limit exceeded" in message
    assert "gemini: Network down" in message
    assert len(exc_info.value.failures) == 2
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_complete_nothing_available():
    chain = FallbackChain(make_registry(FakeProvider(OPENAI, available=False)), [OPENAI])

    with pytest.raises(ProviderChainError) as exc_info:
        await chain.complete("hi", LLMContext())

    assert exc_info.value.failures == []


@pytest.mark.asyncio
async def test_unexpected_exception_is_recorded_and_skipped():
    class Broken(FakeProvider):
        async def complete(self, prompt, context):
            raise RuntimeError("bug")

    chain = FallbackChain(
        make_registry(Broken(OPENAI), FakeProvider(GEMINI, response="ok")),
        [OPENAI, GEMINI]
    )

    assert await chain.complete("hi", LLMContext()) == "ok"
    assert chain.failures[0].code == ErrorCode.UNKNOWN


@pytest.mark.asyncio
async def test_last_resort_backend_runs_last_and_is_never_sticky():
    a = FakeProvider(OPENAI, error=_rate_limited())
    fallback = FakeProvider(LOCAL, response="offline reply", last_resort=True)
    chain = FallbackChain(make_registry(a, fallback), [LOCAL, OPENAI])

    reply = await chain.complete("hello", LLMContext())

    assert reply == "offline reply"
    assert a.complete_calls == 1
    assert chain.last_successful_provider is None


@pytest.mark.asyncio
async def test_unavailable_local_responder_is_skipped():
    """Rate-limited cloud backend plus an unloaded local responder: the chain fails."""
    a = FakeProvider(OPENAI, error=_rate_limited())
    local = LocalProvider(word_delay=0)
    chain = FallbackChain(make_registry(a, local), [OPENAI, LOCAL])

    with pytest.raises(ProviderChainError) as exc_info:
        await chain.complete("hello", LLMContext())

    assert [f.provider for f in exc_info.value.failures] == [OPENAI]
    assert chain.last_successful_provider is None


@pytest.mark.asyncio
async def test_stream_forwards_and_stamps_chunks():
    a = FakeProvider(OPENAI, model="gpt-4o", chunks=[
        StreamChunk.delta("Hel"), StreamChunk.delta("lo"), StreamChunk.done()
    ])
    chain = FallbackChain(make_registry(a), [OPENAI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert [c.content for c in chunks if c.type == ChunkType.CONTENT] == ["Hel", "lo"]
    assert chunks[-1].type == ChunkType.DONE
    assert all(c.provider == OPENAI and c.model == "gpt-4o" for c in chunks)
    assert chain.last_successful_provider == OPENAI


@pytest.mark.asyncio
async def test_stream_error_after_content_is_terminal():
    """A backend that already produced content is never swapped out."""
    a = FakeProvider(OPENAI, chunks=[
        StreamChunk.delta("Hel"),
        StreamChunk.delta("lo"),
        StreamChunk.failure("connection reset", ErrorCode.NETWORK_ERROR.value, True),
    ])
    b = FakeProvider(GEMINI)
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert "".join(c.content for c in chunks if c.type == ChunkType.CONTENT) == "Hello"
    assert chunks[-1].type == ChunkType.ERROR
    assert chunks[-1].provider == OPENAI
    assert b.stream_calls == 0
    assert chain.last_successful_provider == OPENAI


@pytest.mark.asyncio
async def test_stream_retryable_error_before_content_fails_over():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.failure("slow down", ErrorCode.RATE_LIMITED.value, True)])
    b = FakeProvider(GEMINI, model="gemini-2.5-flash", chunks=[StreamChunk.delta("Hi"), StreamChunk.done()])
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert [c.type for c in chunks] == [ChunkType.CONTENT, ChunkType.DONE]
    assert chunks[0].provider == GEMINI
    assert chain.failures[0].code == ErrorCode.RATE_LIMITED
    assert chain.last_successful_provider == GEMINI


@pytest.mark.asyncio
async def test_stream_non_retryable_error_before_content_ends_chain():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.failure("bad key", ErrorCode.API_KEY_INVALID.value, False)])
    b = FakeProvider(GEMINI)
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert len(chunks) == 1
    assert chunks[0].error_code == ErrorCode.API_KEY_INVALID.value
    assert b.stream_calls == 0


@pytest.mark.asyncio
async def test_stream_error_without_retryable_flag_uses_code_default():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.failure("filtered", ErrorCode.CONTENT_FILTERED.value)])
    b = FakeProvider(GEMINI)
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert chunks[-1].type == ChunkType.ERROR
    assert b.stream_calls == 0


@pytest.mark.asyncio
async def test_stream_content_filter_finish_is_forwarded():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.done(FinishReason.CONTENT_FILTER)])
    b = FakeProvider(GEMINI)
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert chunks[0].finish_reason == FinishReason.CONTENT_FILTER
    assert b.stream_calls == 0


@pytest.mark.asyncio
async def test_stream_empty_done_fails_over():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.done()])
    b = FakeProvider(GEMINI, response="fallback")
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert chunks[0].content == "fallback"
    assert chain.failures[0].message == "No content in response"


@pytest.mark.asyncio
async def test_stream_all_failed_emits_one_error():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.failure("down", ErrorCode.NETWORK_ERROR.value, True)])
    b = FakeProvider(GEMINI, available=False)
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chunks = await _collect(chain.stream_complete("hi", LLMContext()))

    assert len(chunks) == 1
    assert chunks[0].type == ChunkType.ERROR
    assert "All providers failed" in chunks[0].error


@pytest.mark.asyncio
async def test_stream_skips_unavailable_local_responder():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.failure("down", ErrorCode.NETWORK_ERROR.value, True)])
    chain = FallbackChain(make_registry(a, LocalProvider(word_delay=0)), [OPENAI, LOCAL])

    chunks = await _collect(chain.stream_complete("hello", LLMContext()))

    assert len(chunks) == 1
    assert chunks[0].type == ChunkType.ERROR
    assert chunks[0].retryable is False
    assert chain.last_successful_provider is None


@pytest.mark.asyncio
async def test_stream_falls_back_to_available_last_resort():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.failure("down", ErrorCode.NETWORK_ERROR.value, True)])
    fallback = FakeProvider(LOCAL, last_resort=True)
    chain = FallbackChain(make_registry(a, fallback), [OPENAI, LOCAL])

    chunks = await _collect(chain.stream_complete("hello", LLMContext()))

    assert chunks[-1].type == ChunkType.DONE
    assert all(c.provider == LOCAL for c in chunks)
    assert chain.last_successful_provider is None


@pytest.mark.asyncio
async def test_stream_close_releases_provider_stream():
    a = FakeProvider(OPENAI, chunks=[StreamChunk.delta(str(i)) for i in range(10)] + [StreamChunk.done()])
    chain = FallbackChain(make_registry(a), [OPENAI])

    iterator = chain.stream_complete("hi", LLMContext())
    await iterator.__anext__()
    await iterator.aclose()

    assert a.stream_closed is True
    assert a.chunks_pulled == 1


def test_set_provider_order_validates_and_dedupes():
    chain = FallbackChain(make_registry(FakeProvider(OPENAI), FakeProvider(GEMINI)))

    chain.set_provider_order([GEMINI, GEMINI, "openai"])

    assert chain.provider_order == [GEMINI, OPENAI]
    with pytest.raises(ValueError):
        chain.set_provider_order([])


@pytest.mark.asyncio
async def test_set_provider_order_drops_stale_sticky_hint():
    chain = FallbackChain(make_registry(FakeProvider(OPENAI), FakeProvider(GEMINI)), [OPENAI, GEMINI])
    await chain.complete("hi", LLMContext())

    chain.set_provider_order([GEMINI])

    assert chain.last_successful_provider is None


@pytest.mark.asyncio
async def test_chain_status_stops_at_first_available():
    a = FakeProvider(OPENAI, available=False)
    b = FakeProvider(GEMINI, available=True)
    c = FakeProvider(LOCAL, available=True)
    chain = FallbackChain(make_registry(a, b, c), [OPENAI, GEMINI, LOCAL])

    results = await chain.get_chain_status()

    assert [r.provider for r in results] == [OPENAI, GEMINI]
    health = await chain.health_check()
    assert health.available is True
    assert health.provider == GEMINI


@pytest.mark.asyncio
async def test_chain_health_check_when_nothing_available():
    chain = FallbackChain(make_registry(FakeProvider(OPENAI, available=False)), [OPENAI])

    result = await chain.health_check()

    assert result.available is False
    assert result.error == "No providers available in fallback chain"


def test_is_available_ignores_unavailable_local_responder():
    a = FakeProvider(OPENAI, available=False)

    assert FallbackChain(make_registry(a), [OPENAI]).is_available() is False
    assert FallbackChain(make_registry(a, LocalProvider()), [OPENAI, LOCAL]).is_available() is False
    assert FallbackChain(make_registry(FakeProvider(OPENAI), LocalProvider()), [OPENAI, LOCAL]).is_available() is True


def test_set_config_routes_sampling_to_all_and_model_to_primary():
    a = FakeProvider(OPENAI, model="gpt-4o")
    b = FakeProvider(GEMINI, model="gemini-2.5-flash")
    chain = FallbackChain(make_registry(a, b), [OPENAI, GEMINI])

    chain.set_config({"temperature": 0.1, "model": "gpt-4o-mini"})

    assert a.config.temperature == 0.1
    assert b.config.temperature == 0.1
    assert a.config.model == "gpt-4o-mini"
    assert b.config.model == "gemini-2.5-flash"


def test_available_models_come_from_primary():
    chain = FallbackChain(make_registry(FakeProvider(GEMINI)), [GEMINI])

    assert chain.get_available_models()[0].id == "gemini-2.5-flash"
