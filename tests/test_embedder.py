"""
Tests for noteai_rag/rag/embedder.py
Embedding provider - model lifecycle, batching, caching and retries.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from noteai_rag.core.errors import (
    DimensionMismatchError,
    InvalidInputError,
    ModelNotAvailableError,
    ModelNotLoadedError,
    ProviderUnavailableError,
    TokenLimitExceededError,
    TransientProviderError,
)
from noteai_rag.core.rate_limiting import RateLimitReservation
from noteai_rag.rag.embedder import (
    BackendOutput,
    EmbeddingBackend,
    EmbeddingConfiguration,
    EmbeddingModel,
    EmbeddingProvider,
    HashingEmbeddingBackend,
    PreprocessingOptions,
)
from noteai_rag.rag.embedding_cache import EmbeddingCache
from noteai_rag.rag.scoring import cosine_similarity

REMOTE_MODEL = EmbeddingModel.TEXT_EMBEDDING_3_SMALL


class FakeRemoteBackend(EmbeddingBackend):
    """Remote-model backend that records calls and can fail on demand."""

    provider = "fake"

    def __init__(self, failures: int = 0, dimension: int | None = None):
        self.calls: list[list[str]] = []
        self.failures = failures
        self.dimension = dimension

    def supports(self, model: EmbeddingModel) -> bool:
        return not model.is_local

    async def embed(self, texts: list[str], model: EmbeddingModel) -> BackendOutput:
        self.calls.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise TransientProviderError("temporary failure")
        size = self.dimension or model.dimension
        return BackendOutput(vectors=[[float(len(t))] * size for t in texts], tokens=len(texts))


async def _remote_provider(backend: EmbeddingBackend, **config) -> EmbeddingProvider:
    config.setdefault("retry_backoff", 0.0)
    provider = EmbeddingProvider(
        backends=[backend],
        configuration=EmbeddingConfiguration(model=REMOTE_MODEL, **config),
    )
    await provider.load_model(REMOTE_MODEL)
    return provider


class TestModelLifecycle:
    """Test loading, unloading and model info."""

    @pytest.mark.asyncio
    async def test_embedding_without_loaded_model_fails(self):
        provider = EmbeddingProvider(backends=[HashingEmbeddingBackend()])
        with pytest.raises(ModelNotLoadedError):
            await provider.generate_embedding("hello")

    @pytest.mark.asyncio
    async def test_unavailable_model_rejected(self):
        provider = EmbeddingProvider(backends=[HashingEmbeddingBackend()])
        with pytest.raises(ModelNotAvailableError):
            await provider.load_model(REMOTE_MODEL)
        with pytest.raises(ModelNotAvailableError):
            await provider.load_model("not-a-model")

    @pytest.mark.asyncio
    async def test_model_info(self, embedder):
        info = embedder.get_model_info()
        assert info.model == EmbeddingModel.LOCAL_HASHING_384
        assert info.dimension == 384
        assert info.is_local
        assert info.loaded

        other = embedder.get_model_info(EmbeddingModel.LOCAL_HASHING_768)
        assert other.dimension == 768
        assert not other.loaded

    @pytest.mark.asyncio
    async def test_switching_models_changes_dimension(self, embedder):
        await embedder.load_model(EmbeddingModel.LOCAL_HASHING_768)
        vector = await embedder.generate_embedding("switch models")
        assert len(vector) == 768
        assert embedder.current_model() == EmbeddingModel.LOCAL_HASHING_768

    @pytest.mark.asyncio
    async def test_unload_model(self, embedder):
        await embedder.unload_model()
        assert embedder.current_model() is None
        with pytest.raises(ModelNotLoadedError):
            embedder.get_model_info()

    @pytest.mark.asyncio
    async def test_update_configuration_switches_model(self, embedder):
        configuration = embedder.get_configuration()
        configuration.model = EmbeddingModel.LOCAL_HASHING_768

        await embedder.update_configuration(configuration)

        assert embedder.current_model() == EmbeddingModel.LOCAL_HASHING_768
        assert embedder.get_model_info().dimension == 768

    @pytest.mark.asyncio
    async def test_configuration_is_returned_as_copy(self, embedder):
        configuration = embedder.get_configuration()
        configuration.batch_size = 99
        assert embedder.get_configuration().batch_size != 99

    def test_configuration_presets(self):
        fast = EmbeddingConfiguration.for_performance()
        accurate = EmbeddingConfiguration.for_accuracy()

        assert fast.model == EmbeddingModel.TEXT_EMBEDDING_3_SMALL
        assert accurate.model == EmbeddingModel.TEXT_EMBEDDING_3_LARGE
        assert fast.batch_size > accurate.batch_size
        assert fast.retry_count < accurate.retry_count

    def test_available_models_follow_backends(self):
        provider = EmbeddingProvider(backends=[HashingEmbeddingBackend()])
        assert set(provider.available_models()) == {
            EmbeddingModel.LOCAL_HASHING_384,
            EmbeddingModel.LOCAL_HASHING_768,
        }


class TestLocalEmbeddings:
    """Test the local hashing backend through the provider."""

    @pytest.mark.asyncio
    async def test_vectors_are_deterministic_and_normalized(self, embedder):
        first = await embedder.generate_embedding("Weekly planning meeting")
        await embedder.cache.clear()
        second = await embedder.generate_embedding("Weekly planning meeting")

        assert len(first) == 384
        assert first == second
        assert sum(v * v for v in first) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_shared_vocabulary_scores_higher(self, embedder):
        query = await embedder.generate_embedding("quarterly budget review")
        related = await embedder.generate_embedding("The quarterly budget review is on Friday")
        unrelated = await embedder.generate_embedding("Tomatoes need plenty of summer sunshine")

        assert cosine_similarity(query, related) > cosine_similarity(query, unrelated)

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, embedder):
        with pytest.raises(InvalidInputError):
            await embedder.generate_embedding("   ")

    @pytest.mark.asyncio
    async def test_empty_batch_returns_empty(self, embedder):
        assert await embedder.generate_embeddings([]) == []

    @pytest.mark.asyncio
    async def test_invalid_batch_size_rejected(self, embedder):
        with pytest.raises(InvalidInputError):
            await embedder.generate_embedding_batch(["text"], 0)

    @pytest.mark.asyncio
    async def test_cache_hits_on_repeat(self, embedder):
        await embedder.generate_embedding("cached text")
        await embedder.generate_embedding("cached   text")  # Same after whitespace normalization
        assert embedder.cache.hits == 1


class TestRemoteEmbeddings:
    """Test batching, limits and retries against a fake remote backend."""

    @pytest.mark.asyncio
    async def test_batches_tile_the_input_in_order(self):
        backend = FakeRemoteBackend()
        provider = await _remote_provider(backend)
        texts = ["a", "bb", "ccc", "dddd", "eeeee"]

        vectors = await provider.generate_embedding_batch(texts, 2)

        assert [len(call) for call in backend.calls] == [2, 2, 1]
        assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_token_limit_checked_before_calling_backend(self):
        backend = FakeRemoteBackend()
        provider = await _remote_provider(backend, max_tokens=5)

        with pytest.raises(TokenLimitExceededError):
            await provider.generate_embedding("one two three four five six")
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        backend = FakeRemoteBackend(failures=2)
        provider = await _remote_provider(backend, retry_count=2)

        vector = await provider.generate_embedding("retry me")

        assert len(vector) == REMOTE_MODEL.dimension
        assert len(backend.calls) == 3
        stats = provider.get_processing_stats()
        assert stats.failed_requests == 2
        assert stats.successful_requests == 1
        assert stats.error_counts == {"TransientProviderError": 2}

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_unavailable(self):
        backend = FakeRemoteBackend(failures=5)
        provider = await _remote_provider(backend, retry_count=1)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await provider.generate_embedding("never works")

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.__cause__, TransientProviderError)

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_an_integrity_error(self):
        provider = await _remote_provider(FakeRemoteBackend(dimension=7))
        with pytest.raises(DimensionMismatchError):
            await provider.generate_embedding("bad vector")

    @pytest.mark.asyncio
    async def test_usage_and_rate_limits_reported(self):
        tracker = AsyncMock()
        limiter = AsyncMock()
        limiter.acquire.return_value = RateLimitReservation(key="noteai", tokens=2)
        provider = EmbeddingProvider(
            backends=[FakeRemoteBackend()],
            configuration=EmbeddingConfiguration(model=REMOTE_MODEL),
            usage_tracker=tracker,
            rate_limiter=limiter,
        )
        await provider.load_model(REMOTE_MODEL)

        await provider.generate_embedding("two tokens")

        limiter.acquire.assert_awaited_once_with("noteai", 2)
        limiter.release.assert_not_awaited()
        kwargs = tracker.track.await_args.kwargs
        assert kwargs["operation"] == "embedding"
        assert kwargs["model"] == REMOTE_MODEL.value
        assert kwargs["success"] is True

    @pytest.mark.asyncio
    async def test_failed_call_releases_reservation(self):
        limiter = AsyncMock()
        reservation = RateLimitReservation(key="noteai", tokens=1)
        limiter.acquire.return_value = reservation
        provider = EmbeddingProvider(
            backends=[FakeRemoteBackend(failures=1)],
            configuration=EmbeddingConfiguration(model=REMOTE_MODEL, retry_count=0),
            rate_limiter=limiter,
        )
        await provider.load_model(REMOTE_MODEL)

        with pytest.raises(ProviderUnavailableError):
            await provider.generate_embedding("fails")

        limiter.release.assert_awaited_once_with(reservation)

    @pytest.mark.asyncio
    async def test_cancelled_call_releases_reservation_without_usage(self):
        started = asyncio.Event()

        class HangingBackend(FakeRemoteBackend):
            async def embed(self, texts, model):
                started.set()
                await asyncio.Event().wait()

        tracker = AsyncMock()
        limiter = AsyncMock()
        reservation = RateLimitReservation(key="noteai", tokens=1)
        limiter.acquire.return_value = reservation
        provider = EmbeddingProvider(
            backends=[HangingBackend()],
            configuration=EmbeddingConfiguration(model=REMOTE_MODEL),
            usage_tracker=tracker,
            rate_limiter=limiter,
        )
        await provider.load_model(REMOTE_MODEL)

        call = asyncio.create_task(provider.generate_embedding("never finishes"))
        await started.wait()
        call.cancel()
        with pytest.raises(asyncio.CancelledError):
            await call

        limiter.release.assert_awaited_once_with(reservation)
        tracker.track.assert_not_awaited()
        assert provider.get_processing_stats().total_requests == 0

    @pytest.mark.asyncio
    async def test_model_switch_waits_for_inflight_calls(self):
        release = asyncio.Event()

        class SlowBackend(FakeRemoteBackend):
            async def embed(self, texts, model):
                await release.wait()
                return await super().embed(texts, model)

        provider = EmbeddingProvider(
            backends=[SlowBackend(), HashingEmbeddingBackend()],
            configuration=EmbeddingConfiguration(model=REMOTE_MODEL, enable_caching=False),
        )
        await provider.load_model(REMOTE_MODEL)

        call = asyncio.create_task(provider.generate_embedding("slow"))
        await asyncio.sleep(0)
        switch = asyncio.create_task(provider.load_model(EmbeddingModel.LOCAL_HASHING_384))
        await asyncio.sleep(0)
        assert provider.current_model() == REMOTE_MODEL

        release.set()
        vector = await call
        await switch

        assert len(vector) == REMOTE_MODEL.dimension
        assert provider.current_model() == EmbeddingModel.LOCAL_HASHING_384


class TestPreprocessing:
    """Test preprocessing options."""

    def test_options_applied_in_order(self):
        options = PreprocessingOptions(lowercase=True, remove_stop_words=True, max_length=12)
        assert options.apply("  The   Budget is  APPROVED today ") == "budget appro"

    def test_min_length_enforced(self):
        with pytest.raises(InvalidInputError):
            PreprocessingOptions(min_length=5).apply("abc")


class TestEmbeddingCache:
    """Test the Redis-backed cache."""

    @pytest.mark.asyncio
    async def test_round_trip_is_exact(self, fake_redis):
        cache = EmbeddingCache(fake_redis, ttl_seconds=60)
        vector = [0.1, -0.25, 1 / 3]

        await cache.set("model-a", "text", vector)

        assert await cache.get("model-a", "text") == vector
        assert await cache.get("model-b", "text") is None
        assert fake_redis.ttls[cache.key("model-a", "text")] == 60
        assert cache.hit_rate == 0.5

    @pytest.mark.asyncio
    async def test_oldest_entries_evicted(self, fake_redis):
        cache = EmbeddingCache(fake_redis, max_entries=2)

        for text in ["one", "two", "three"]:
            await cache.set("m", text, [1.0])

        assert await cache.get("m", "one") is None
        assert await cache.get("m", "three") == [1.0]
        assert await fake_redis.zcard(cache.index_key) == 2

    @pytest.mark.asyncio
    async def test_preprocessing_change_clears_cache(self, embedder, fake_redis):
        await embedder.generate_embedding("Budget Review")
        configuration = embedder.get_configuration()
        configuration.preprocessing = PreprocessingOptions(lowercase=True)

        await embedder.update_configuration(configuration)

        assert fake_redis.values == {}
        assert embedder.cache.hits == 0

    @pytest.mark.asyncio
    async def test_caching_disabled(self, fake_redis):
        provider = EmbeddingProvider(
            backends=[HashingEmbeddingBackend()],
            configuration=EmbeddingConfiguration(model=EmbeddingModel.LOCAL_HASHING_384, enable_caching=False),
            cache=EmbeddingCache(fake_redis),
        )
        await provider.load_model(EmbeddingModel.LOCAL_HASHING_384)

        await provider.generate_embedding("not cached")

        assert fake_redis.values == {}

    @pytest.mark.asyncio
    async def test_close_releases_client(self, embedder, fake_redis):
        await embedder.close()
        assert fake_redis.closed
