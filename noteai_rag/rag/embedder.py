"""Embedding provider.

Converts text into fixed-dimension vectors through a pluggable backend:
- OpenAI / Azure OpenAI embeddings (remote, metered)
- A local feature-hashing vectorizer (no network, deterministic)

Exactly one model is active per provider instance. Switching models waits for
in-flight calls on the previous model to drain.
"""

import asyncio
import hashlib
import logging
import re
import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from enum import Enum

import httpx
import numpy as np
import openai
import redis.asyncio as redis
from openai import AsyncAzureOpenAI, AsyncOpenAI

from noteai_rag.core.config import Settings, get_settings
from noteai_rag.core.errors import (
    ConfigurationError,
    DimensionMismatchError,
    InvalidInputError,
    ModelNotAvailableError,
    ModelNotLoadedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RAGError,
    RateLimitExceeded,
    TokenLimitExceededError,
    TransientProviderError,
)
from noteai_rag.core.rate_limiting import RateLimiter, get_rate_limiter
from noteai_rag.observability.usage_tracker import UsageRecorder, get_usage_tracker
from noteai_rag.rag.embedding_cache import EmbeddingCache
from noteai_rag.rag.tokens import estimate_tokens, extract_terms

logger = logging.getLogger(__name__)


# ============================================
# Model Catalog
# ============================================


@dataclass(frozen=True)
class ModelSpec:
    display_name: str
    dimension: int
    is_local: bool
    max_tokens: int
    cost_per_1k_tokens: float | None = None


class EmbeddingModel(str, Enum):
    TEXT_EMBEDDING_3_SMALL = "text-embedding-3-small"
    TEXT_EMBEDDING_3_LARGE = "text-embedding-3-large"
    TEXT_EMBEDDING_ADA_002 = "text-embedding-ada-002"
    LOCAL_HASHING_384 = "local-hashing-384"
    LOCAL_HASHING_768 = "local-hashing-768"

    @property
    def spec(self) -> ModelSpec:
        return MODEL_CATALOG[self]

    @property
    def dimension(self) -> int:
        return self.spec.dimension

    @property
    def is_local(self) -> bool:
        return self.spec.is_local

    @classmethod
    def parse(cls, value: "str | EmbeddingModel") -> "EmbeddingModel":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ModelNotAvailableError(str(value)) from None


MODEL_CATALOG: dict[EmbeddingModel, ModelSpec] = {
    EmbeddingModel.TEXT_EMBEDDING_3_SMALL: ModelSpec(
        "OpenAI Embedding v3 Small", 1536, is_local=False, max_tokens=8191, cost_per_1k_tokens=0.00002
    ),
    EmbeddingModel.TEXT_EMBEDDING_3_LARGE: ModelSpec(
        "OpenAI Embedding v3 Large", 3072, is_local=False, max_tokens=8191, cost_per_1k_tokens=0.00013
    ),
    EmbeddingModel.TEXT_EMBEDDING_ADA_002: ModelSpec(
        "OpenAI Ada v2", 1536, is_local=False, max_tokens=8191, cost_per_1k_tokens=0.0001
    ),
    EmbeddingModel.LOCAL_HASHING_384: ModelSpec(
        "Local Hashing (384)", 384, is_local=True, max_tokens=8192
    ),
    EmbeddingModel.LOCAL_HASHING_768: ModelSpec(
        "Local Hashing (768)", 768, is_local=True, max_tokens=8192
    ),
}


@dataclass
class EmbeddingModelInfo:
    model: EmbeddingModel
    display_name: str
    dimension: int
    is_local: bool
    max_tokens: int
    cost_per_1k_tokens: float | None
    loaded: bool


# ============================================
# Configuration
# ============================================

STOP_WORDS = frozenset(
    "a an and are as at be but by for from has have in is it its of on or that the this to was were will with".split()
)

_WHITESPACE = re.compile(r"\s+")
_SPECIAL_CHARACTERS = re.compile(r"[^\w\s.,!?;:'\"()\-。、！？「」]", re.UNICODE)


@dataclass
class PreprocessingOptions:
    """Applied identically to indexed text and query text."""

    normalize_whitespace: bool = True
    remove_special_characters: bool = False
    lowercase: bool = False
    remove_stop_words: bool = False
    stop_words: frozenset[str] = STOP_WORDS
    max_length: int | None = None  # Characters kept
    min_length: int = 1  # Shorter text is rejected

    def apply(self, text: str) -> str:
        if self.remove_special_characters:
            text = _SPECIAL_CHARACTERS.sub(" ", text)
        if self.normalize_whitespace:
            text = _WHITESPACE.sub(" ", text)
        text = text.strip()
        if self.lowercase:
            text = text.lower()
        if self.remove_stop_words:
            text = " ".join(w for w in text.split(" ") if w.lower() not in self.stop_words)
        if self.max_length is not None:
            text = text[: self.max_length].rstrip()

        if not text:
            raise InvalidInputError("Cannot embed empty text")
        if len(text) < self.min_length:
            raise InvalidInputError(
                f"Text of {len(text)} characters is shorter than the minimum of {self.min_length}"
            )
        return text


@dataclass
class EmbeddingConfiguration:
    model: EmbeddingModel = EmbeddingModel.TEXT_EMBEDDING_3_SMALL
    max_tokens: int = 8192
    batch_size: int = 10
    timeout: float = 30.0
    retry_count: int = 3
    retry_backoff: float = 0.5
    enable_caching: bool = True
    cache_expiration: int = 3600
    cache_max_entries: int = 10000
    preprocessing: PreprocessingOptions = field(default_factory=PreprocessingOptions)

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.retry_count < 0:
            raise ConfigurationError("retry_count must not be negative")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")

    @classmethod
    def for_performance(cls) -> "EmbeddingConfiguration":
        """Favor throughput: small model, large batches, aggressive caching."""
        return cls(
            model=EmbeddingModel.TEXT_EMBEDDING_3_SMALL,
            batch_size=50,
            timeout=15.0,
            retry_count=1,
            cache_expiration=7200,
            preprocessing=PreprocessingOptions(max_length=4000),
        )

    @classmethod
    def for_accuracy(cls) -> "EmbeddingConfiguration":
        """Favor quality: large model, small batches, patient retries."""
        return cls(
            model=EmbeddingModel.TEXT_EMBEDDING_3_LARGE,
            batch_size=5,
            timeout=60.0,
            retry_count=5,
            cache_expiration=1800,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingConfiguration":
        return cls(
            model=EmbeddingModel.parse(settings.embedding_model),
            max_tokens=settings.embedding_max_tokens,
            batch_size=settings.embedding_batch_size,
            timeout=settings.embedding_timeout,
            retry_count=settings.embedding_retry_count,
            retry_backoff=settings.embedding_retry_backoff,
            enable_caching=settings.embedding_cache_enabled,
            cache_expiration=settings.embedding_cache_ttl,
            cache_max_entries=settings.embedding_cache_max_entries,
            preprocessing=PreprocessingOptions(
                normalize_whitespace=settings.embedding_normalize_whitespace,
                remove_special_characters=settings.embedding_remove_special_characters,
                lowercase=settings.embedding_lowercase,
                remove_stop_words=settings.embedding_remove_stop_words,
                max_length=settings.embedding_max_length,
                min_length=settings.embedding_min_length,
            ),
        )


@dataclass
class EmbeddingProcessingStats:
    total_requests: int
    successful_requests: int
    failed_requests: int
    total_texts: int
    total_tokens: int
    average_processing_time: float  # Seconds per backend call
    cache_hit_rate: float
    recent_processing_times: list[float]
    error_counts: dict[str, int]

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.successful_requests / self.total_requests


# ============================================
# Backends
# ============================================


@dataclass
class BackendOutput:
    vectors: list[list[float]]
    tokens: int | None = None  # Provider-reported usage, when available


class EmbeddingBackend(ABC):
    """Executes embeddings for the models it supports."""

    provider: str = "unknown"

    @abstractmethod
    def supports(self, model: EmbeddingModel) -> bool:
        """Whether this backend can serve ``model``."""

    async def load(self, model: EmbeddingModel) -> None:
        """Prepare ``model`` for use."""

    async def unload(self, model: EmbeddingModel) -> None:
        """Release resources held for ``model``."""

    @abstractmethod
    async def embed(self, texts: list[str], model: EmbeddingModel) -> BackendOutput:
        """Embed preprocessed texts in one call."""

    async def close(self) -> None:
        """Release network clients."""


def _timeout_seconds(timeout: "httpx.Timeout | float | None") -> float:
    if isinstance(timeout, httpx.Timeout):
        return timeout.read or 0.0
    return float(timeout or 0.0)


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """OpenAI or Azure OpenAI embeddings endpoint."""

    def __init__(self, client: AsyncOpenAI, provider: str = "openai"):
        self.client = client
        self.provider = provider

    def supports(self, model: EmbeddingModel) -> bool:
        return not model.is_local

    async def embed(self, texts: list[str], model: EmbeddingModel) -> BackendOutput:
        try:
            response = await self.client.embeddings.create(input=texts, model=model.value)
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError("embedding", _timeout_seconds(self.client.timeout)) from e
        except openai.RateLimitError as e:
            raise RateLimitExceeded(limit_type="provider", limit=0, remaining=0, retry_after=60) from e
        except openai.APIConnectionError as e:
            raise TransientProviderError(f"Embedding endpoint unreachable: {e}") from e
        except openai.BadRequestError as e:
            raise InvalidInputError(f"Embedding request rejected: {e}") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError(f"Embedding credentials rejected: {e}") from e
        except openai.NotFoundError as e:
            raise ModelNotAvailableError(model.value, "not deployed at the endpoint") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientProviderError(f"Embedding endpoint error {e.status_code}") from e
            raise ConfigurationError(f"Embedding request failed with {e.status_code}: {e}") from e

        # Map embeddings back to input order
        data = sorted(response.data, key=lambda d: d.index)
        tokens = response.usage.prompt_tokens if response.usage else None
        return BackendOutput(vectors=[list(d.embedding) for d in data], tokens=tokens)

    async def close(self) -> None:
        await self.client.close()


class HashingEmbeddingBackend(EmbeddingBackend):
    """Local feature-hashing vectorizer.

    Word terms and character trigrams are hashed into signed buckets and the
    result is L2-normalized, so texts sharing vocabulary land close together
    under cosine similarity. Deterministic across processes.
    """

    provider = "local"

    def __init__(self):
        self._loaded: set[EmbeddingModel] = set()

    def supports(self, model: EmbeddingModel) -> bool:
        return model.is_local

    async def load(self, model: EmbeddingModel) -> None:
        self._loaded.add(model)

    async def unload(self, model: EmbeddingModel) -> None:
        self._loaded.discard(model)

    async def embed(self, texts: list[str], model: EmbeddingModel) -> BackendOutput:
        if model not in self._loaded:
            raise ModelNotLoadedError(model.value)
        return BackendOutput(vectors=[self.vectorize(t, model.dimension) for t in texts])

    @staticmethod
    def _features(text: str) -> list[str]:
        features = []
        for term in extract_terms(text):
            features.append(f"w:{term}")
            padded = f"#{term}#"
            features.extend(f"c:{padded[i:i + 3]}" for i in range(max(len(padded) - 2, 1)))
        return features

    @classmethod
    def vectorize(cls, text: str, dimension: int) -> list[float]:
        vector = np.zeros(dimension, dtype=np.float64)
        for feature in cls._features(text):
            digest = int.from_bytes(hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest(), "big")
            sign = 1.0 if digest >> 63 else -1.0
            vector[digest % dimension] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()


# ============================================
# Provider
# ============================================


class EmbeddingProvider:
    """Embedding service with model lifecycle, batching, caching and retries."""

    def __init__(
        self,
        backends: list[EmbeddingBackend],
        configuration: EmbeddingConfiguration | None = None,
        usage_tracker: UsageRecorder | None = None,
        rate_limiter: RateLimiter | None = None,
        rate_limit_key: str = "noteai",
        cache: EmbeddingCache | None = None,
    ):
        if not backends:
            raise ConfigurationError("At least one embedding backend is required")
        self.backends = backends
        self.configuration = configuration or EmbeddingConfiguration()
        self.usage_tracker = usage_tracker
        self.rate_limiter = rate_limiter
        self.rate_limit_key = rate_limit_key
        self.cache = cache

        self._current: EmbeddingModel | None = None
        self._switch_lock = asyncio.Lock()
        self._state = asyncio.Condition()
        self._inflight = 0
        self._switching = False

        self._requests = 0
        self._failures = 0
        self._texts = 0
        self._tokens = 0
        self._total_time = 0.0
        self._recent_times: deque[float] = deque(maxlen=100)
        self._error_counts: Counter[str] = Counter()

    # ----------------------------------------
    # Model management
    # ----------------------------------------

    def _backend_for(self, model: EmbeddingModel) -> EmbeddingBackend | None:
        return next((b for b in self.backends if b.supports(model)), None)

    def available_models(self) -> list[EmbeddingModel]:
        """Models some configured backend can serve."""
        return [m for m in EmbeddingModel if self._backend_for(m) is not None]

    def current_model(self) -> EmbeddingModel | None:
        return self._current

    async def load_model(self, model: "EmbeddingModel | str") -> None:
        """Make ``model`` the active model, draining calls on the previous one."""
        model = EmbeddingModel.parse(model)
        backend = self._backend_for(model)
        if backend is None:
            raise ModelNotAvailableError(model.value, "no backend configured for it")

        async with self._switch_lock, self._exclusive():
            previous = self._current
            if previous is not None and previous != model:
                await self._backend_for(previous).unload(previous)
                self._current = None
            await backend.load(model)
            self._current = model

        logger.info(f"[Embedder] Loaded model '{model.value}' ({model.dimension} dims)")

    async def unload_model(self) -> None:
        async with self._switch_lock, self._exclusive():
            if self._current is None:
                return
            model = self._current
            await self._backend_for(model).unload(model)
            self._current = None

        logger.info(f"[Embedder] Unloaded model '{model.value}'")

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        """Block new embedding calls and wait for running ones to finish."""
        async with self._state:
            self._switching = True
            await self._state.wait_for(lambda: self._inflight == 0)
        try:
            yield
        finally:
            async with self._state:
                self._switching = False
                self._state.notify_all()

    @asynccontextmanager
    async def _model_session(self) -> AsyncIterator[EmbeddingModel]:
        async with self._state:
            await self._state.wait_for(lambda: not self._switching)
            if self._current is None:
                raise ModelNotLoadedError()
            model = self._current
            self._inflight += 1
        try:
            yield model
        finally:
            async with self._state:
                self._inflight -= 1
                self._state.notify_all()

    def get_model_info(self, model: "EmbeddingModel | str | None" = None) -> EmbeddingModelInfo:
        target = EmbeddingModel.parse(model) if model is not None else self._current
        if target is None:
            raise ModelNotLoadedError()
        spec = target.spec
        return EmbeddingModelInfo(
            model=target,
            display_name=spec.display_name,
            dimension=spec.dimension,
            is_local=spec.is_local,
            max_tokens=spec.max_tokens,
            cost_per_1k_tokens=spec.cost_per_1k_tokens,
            loaded=target == self._current,
        )

    # ----------------------------------------
    # Configuration and stats
    # ----------------------------------------

    def get_configuration(self) -> EmbeddingConfiguration:
        return replace(self.configuration)

    async def update_configuration(self, configuration: EmbeddingConfiguration) -> None:
        """Apply a new configuration, switching models when it names another one."""
        previous = self.configuration
        self.configuration = configuration
        if self.cache is not None:
            self.cache.ttl_seconds = configuration.cache_expiration
            self.cache.max_entries = configuration.cache_max_entries
            # Cached vectors were computed from differently preprocessed text
            if configuration.preprocessing != previous.preprocessing:
                await self.cache.clear()
        if self._current is not None and configuration.model != self._current:
            await self.load_model(configuration.model)

    def get_processing_stats(self) -> EmbeddingProcessingStats:
        successes = self._requests - self._failures
        return EmbeddingProcessingStats(
            total_requests=self._requests,
            successful_requests=successes,
            failed_requests=self._failures,
            total_texts=self._texts,
            total_tokens=self._tokens,
            average_processing_time=self._total_time / successes if successes else 0.0,
            cache_hit_rate=self.cache.hit_rate if self.cache is not None else 0.0,
            recent_processing_times=list(self._recent_times),
            error_counts=dict(self._error_counts),
        )

    def preprocess(self, text: str) -> str:
        return self.configuration.preprocessing.apply(text)

    # ----------------------------------------
    # Embedding
    # ----------------------------------------

    async def generate_embedding(self, text: str) -> list[float]:
        """Embed a single text."""
        vectors = await self.generate_embeddings([text])
        return vectors[0]

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Embed texts using the configured batch size."""
        return await self.generate_embedding_batch(texts, self.configuration.batch_size)

    async def generate_embedding_batch(self, texts: list[str], batch_size: int) -> list[list[float]]:
        """Embed texts, tiling them into sub-batches of at most ``batch_size``.

        Args:
            texts: Raw texts; preprocessing is applied here
            batch_size: Maximum texts per backend call

        Returns:
            One vector per input text, in input order
        """
        if batch_size <= 0:
            raise InvalidInputError(f"batch_size must be positive, got {batch_size}")
        if not texts:
            return []

        processed = [self.preprocess(t) for t in texts]

        async with self._model_session() as model:
            backend = self._backend_for(model)
            limit = min(self.configuration.max_tokens, model.spec.max_tokens)
            for text in processed:
                tokens = estimate_tokens(text)
                if tokens > limit:
                    raise TokenLimitExceededError(model.value, tokens, limit)

            caching = self.cache is not None and self.configuration.enable_caching
            results: list[list[float] | None] = [None] * len(processed)
            pending: list[int] = []
            for i, text in enumerate(processed):
                cached = await self.cache.get(model.value, text) if caching else None
                if cached is None:
                    pending.append(i)
                else:
                    results[i] = cached

            for start in range(0, len(pending), batch_size):
                batch = pending[start : start + batch_size]
                vectors = await self._embed_with_retry(backend, model, [processed[i] for i in batch])
                if len(vectors) != len(batch):
                    raise TransientProviderError(
                        f"Backend returned {len(vectors)} vectors for {len(batch)} texts"
                    )
                for i, vector in zip(batch, vectors, strict=True):
                    if len(vector) != model.dimension:
                        raise DimensionMismatchError(model.dimension, len(vector))
                    results[i] = vector
                    if caching:
                        await self.cache.set(model.value, processed[i], vector)

            if pending:
                logger.debug(
                    f"[Embedder] Embedded {len(pending)} texts with '{model.value}' "
                    f"({len(processed) - len(pending)} from cache)"
                )
            return results

    async def _embed_with_retry(
        self, backend: EmbeddingBackend, model: EmbeddingModel, texts: list[str]
    ) -> list[list[float]]:
        tokens = sum(estimate_tokens(t) for t in texts)
        attempts = self.configuration.retry_count + 1
        last_error: RAGError | None = None

        for attempt in range(1, attempts + 1):
            reservation = None
            if not model.is_local and self.rate_limiter is not None:
                reservation = await self.rate_limiter.acquire(self.rate_limit_key, tokens)

            self._requests += 1
            start = time.perf_counter()
            try:
                output = await asyncio.wait_for(
                    backend.embed(texts, model), timeout=self.configuration.timeout
                )
            except asyncio.CancelledError:
                # Never completed: give the slot back and charge nothing
                self._requests -= 1
                if reservation is not None:
                    await self.rate_limiter.release(reservation)
                raise
            except (TimeoutError, TransientProviderError) as e:
                error = (
                    ProviderTimeoutError("embedding", self.configuration.timeout)
                    if isinstance(e, TimeoutError)
                    else e
                )
                await self._record_failure(backend, model, start, error, reservation)
                last_error = error
                if attempt < attempts:
                    delay = self.configuration.retry_backoff * (2 ** (attempt - 1))
                    logger.warning(
                        f"[Embedder] Attempt {attempt}/{attempts} failed ({error}); retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                continue
            except RAGError as e:
                await self._record_failure(backend, model, start, e, reservation)
                raise

            latency = time.perf_counter() - start
            self._total_time += latency
            self._recent_times.append(latency)
            self._texts += len(texts)
            used = output.tokens if output.tokens is not None else tokens
            self._tokens += used
            await self._report(backend, model, used, latency, success=True)
            return output.vectors

        raise ProviderUnavailableError("embedding", attempts, last_error) from last_error

    async def _record_failure(self, backend, model, start, error, reservation) -> None:
        self._failures += 1
        self._error_counts[type(error).__name__] += 1
        if reservation is not None:
            await self.rate_limiter.release(reservation)
        await self._report(backend, model, 0, time.perf_counter() - start, success=False, error=str(error))

    async def _report(
        self,
        backend: EmbeddingBackend,
        model: EmbeddingModel,
        tokens: int,
        latency: float,
        success: bool,
        error: str | None = None,
    ) -> None:
        if self.usage_tracker is None:
            return
        if model.is_local:
            # Local calls report latency only
            await self.usage_tracker.track(
                provider=backend.provider,
                model=model.value,
                operation="embedding",
                latency_ms=latency * 1000,
                success=success,
                error=error,
                cost_usd=0.0,
            )
            return
        cost = (tokens / 1000) * (model.spec.cost_per_1k_tokens or 0.0)
        await self.usage_tracker.track(
            provider=backend.provider,
            model=model.value,
            operation="embedding",
            prompt_tokens=tokens,
            latency_ms=latency * 1000,
            success=success,
            error=error,
            cost_usd=cost,
        )

    async def close(self) -> None:
        for backend in self.backends:
            await backend.close()
        if self.cache is not None:
            await self.cache.close()


# Singleton instance
_embedding_provider: EmbeddingProvider | None = None


def build_backends(settings: Settings) -> list[EmbeddingBackend]:
    """Local hashing is always available; remote models need credentials."""
    backends: list[EmbeddingBackend] = [HashingEmbeddingBackend()]

    # Longer timeout for large batch embedding operations
    timeout = httpx.Timeout(120.0, connect=30.0)
    if settings.azure_openai_endpoint and settings.azure_openai_api_key:
        client = AsyncAzureOpenAI(
            api_key=settings.azure_openai_api_key,
            api_version=settings.azure_openai_api_version,
            azure_endpoint=settings.azure_openai_endpoint,
            timeout=timeout,
            max_retries=0,  # Retries are handled by EmbeddingProvider
        )
        backends.append(OpenAIEmbeddingBackend(client, provider="azure"))
    elif settings.openai_api_key:
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=timeout,
            max_retries=0,
        )
        backends.append(OpenAIEmbeddingBackend(client, provider="openai"))

    return backends


async def get_embedding_provider() -> EmbeddingProvider:
    """Get or create the global EmbeddingProvider with the configured model loaded."""
    global _embedding_provider

    if _embedding_provider is None:
        settings = get_settings()
        configuration = EmbeddingConfiguration.from_settings(settings)
        cache = None
        if settings.embedding_cache_enabled:
            cache = EmbeddingCache(
                redis_client=redis.from_url(settings.redis_url),
                ttl_seconds=settings.embedding_cache_ttl,
                max_entries=settings.embedding_cache_max_entries,
            )
        provider = EmbeddingProvider(
            backends=build_backends(settings),
            configuration=configuration,
            usage_tracker=get_usage_tracker(),
            rate_limiter=get_rate_limiter(),
            rate_limit_key=settings.rate_limit_key,
            cache=cache,
        )
        logger.info(f"Initializing embedding provider with model '{configuration.model.value}'")
        await provider.load_model(configuration.model)
        _embedding_provider = provider

    return _embedding_provider


async def shutdown_embedding_provider() -> None:
    global _embedding_provider
    if _embedding_provider is not None:
        await _embedding_provider.close()
        _embedding_provider = None
