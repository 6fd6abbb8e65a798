"""Vector store contract shared by the in-memory and Qdrant adapters."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

from noteai_rag.core.errors import (
    ChunkReferenceError,
    ConfigurationError,
    DimensionMismatchError,
    InvalidInputError,
)
from noteai_rag.rag.models import (
    ContentChunk,
    ContentMetadata,
    DistanceMetric,
    IndexAlgorithm,
    IndexConfiguration,
    IndexInfo,
    SearchFilters,
    VectorSearchResult,
    utcnow,
)
from noteai_rag.rag.scoring import ranking_score


@dataclass
class VectorStoreItem:
    """One content item for ``batch_store``."""

    content_id: str
    embeddings: list[list[float]]
    metadata: ContentMetadata
    chunks: list[ContentChunk]


@dataclass
class MemoryUsage:
    index_bytes: int
    metadata_bytes: int
    cache_bytes: int

    @property
    def total_bytes(self) -> int:
        return self.index_bytes + self.metadata_bytes + self.cache_bytes


@dataclass
class StorageStats:
    total_vectors: int
    total_indices: int
    storage_bytes: int
    average_dimension: float
    index_distribution: dict[str, int]
    memory: MemoryUsage
    last_updated: datetime = field(default_factory=utcnow)


@dataclass
class SearchPerformance:
    average_search_time: float  # Seconds
    recent_search_times: list[float]
    throughput_per_second: float
    cache_hit_rate: float
    total_searches: int
    last_measured_at: datetime = field(default_factory=utcnow)


class ReadWriteLock:
    """Many concurrent readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and not self._waiting_writers)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class SearchMetrics:
    """Rolling search latency and cache counters."""

    def __init__(self, window: int = 100):
        self.total_searches = 0
        self.total_time = 0.0
        self.cache_hits = 0
        self.cache_lookups = 0
        self._recent: deque[tuple[float, float]] = deque(maxlen=window)  # (finished_at, seconds)

    def record(self, seconds: float) -> None:
        self.total_searches += 1
        self.total_time += seconds
        self._recent.append((time.monotonic(), seconds))

    def record_cache(self, hit: bool) -> None:
        self.cache_lookups += 1
        if hit:
            self.cache_hits += 1

    def snapshot(self) -> SearchPerformance:
        recent = [s for _, s in self._recent]
        throughput = 0.0
        if len(self._recent) >= 2:
            span = self._recent[-1][0] - self._recent[0][0]
            if span > 0:
                throughput = (len(self._recent) - 1) / span
        return SearchPerformance(
            average_search_time=sum(recent) / len(recent) if recent else 0.0,
            recent_search_times=recent,
            throughput_per_second=throughput,
            cache_hit_rate=self.cache_hits / self.cache_lookups if self.cache_lookups else 0.0,
            total_searches=self.total_searches,
        )


def rank_results(results: list[VectorSearchResult], metric: DistanceMetric) -> list[VectorSearchResult]:
    """Best raw score in the metric's direction first, then newest, then chunk id."""
    return sorted(
        results,
        key=lambda r: (ranking_score(r.score, metric), -r.metadata.timestamp.timestamp(), r.chunk.id),
    )


def parse_metric(metric: "DistanceMetric | str") -> DistanceMetric:
    try:
        return DistanceMetric(metric)
    except ValueError:
        raise ConfigurationError(f"Unknown distance metric: {metric}") from None


def parse_algorithm(algorithm: "IndexAlgorithm | str") -> IndexAlgorithm:
    try:
        return IndexAlgorithm(algorithm)
    except ValueError:
        raise ConfigurationError(f"Unknown index algorithm: {algorithm}") from None


def validate_payload(
    content_id: str,
    embeddings: list[list[float]],
    metadata: ContentMetadata,
    chunks: list[ContentChunk],
    dimension: int,
    index: str,
) -> None:
    """Check a store payload in full before anything is written."""
    if not embeddings:
        raise InvalidInputError(f"No embeddings supplied for content '{content_id}'")
    if len(embeddings) != len(chunks):
        raise ChunkReferenceError(
            f"{len(embeddings)} embeddings supplied for {len(chunks)} chunks",
            content_id=content_id,
        )
    if metadata.content_id != content_id:
        raise ChunkReferenceError(
            f"Metadata belongs to '{metadata.content_id}', not '{content_id}'",
            content_id=content_id,
        )
    if len({c.id for c in chunks}) != len(chunks):
        raise ChunkReferenceError("Duplicate chunk ids", content_id=content_id)
    validate_dimensions(embeddings, dimension, index)


def validate_dimensions(embeddings: list[list[float]], dimension: int, index: str) -> None:
    for vector in embeddings:
        if len(vector) != dimension:
            raise DimensionMismatchError(dimension, len(vector), index=index)


class VectorStore(ABC):
    """Named indexes of chunk vectors with metadata-filtered nearest-neighbor search.

    Operations that take ``index`` fall back to the store's default index.
    Thresholds are on the normalized [0, 1] relevance scale; result scores are
    raw metric values.
    """

    backend_name = "abstract"

    def __init__(self, default_index: str | None = None):
        self.default_index = default_index
        self._content_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._content_users: Counter[tuple[str, str]] = Counter()

    def _resolve(self, index: str | None) -> str:
        name = index or self.default_index
        if not name:
            raise ConfigurationError("No index given and the store has no default index")
        return name

    @asynccontextmanager
    async def _content_lock(self, index: str, content_id: str) -> AsyncIterator[None]:
        """Serializes writes for one content id; acquisition order decides the winner.

        The lock is dropped once no caller holds or waits for it.
        """
        key = (index, content_id)
        lock = self._content_locks.setdefault(key, asyncio.Lock())
        self._content_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._content_users[key] -= 1
            if self._content_users[key] == 0:
                del self._content_users[key]
                del self._content_locks[key]

    # Index lifecycle

    @abstractmethod
    async def create_index(
        self,
        name: str,
        dimension: int,
        metric: "DistanceMetric | str" = DistanceMetric.COSINE,
        algorithm: "IndexAlgorithm | str" = IndexAlgorithm.FLAT,
        configuration: IndexConfiguration | None = None,
    ) -> IndexInfo:
        """Create an empty index."""

    @abstractmethod
    async def delete_index(self, name: str) -> None:
        """Delete an index and every entry in it."""

    @abstractmethod
    async def optimize_index(self, name: str) -> IndexInfo:
        """Rebuild internal structures without changing search semantics."""

    @abstractmethod
    async def get_index_info(self, name: str) -> IndexInfo:
        """Describe an index."""

    @abstractmethod
    async def list_indexes(self) -> list[str]:
        """Names of existing indexes."""

    async def has_index(self, name: str) -> bool:
        return name in await self.list_indexes()

    # Entries

    @abstractmethod
    async def store(
        self,
        content_id: str,
        embeddings: list[list[float]],
        metadata: ContentMetadata,
        chunks: list[ContentChunk],
        index: str | None = None,
    ) -> int:
        """Replace every entry of ``content_id`` atomically. Returns vectors stored."""

    @abstractmethod
    async def search(
        self,
        embedding: list[float],
        top_k: int = 10,
        threshold: float = 0.0,
        filters: SearchFilters | None = None,
        index: str | None = None,
    ) -> list[VectorSearchResult]:
        """Nearest chunks at or above ``threshold``, best first, at most ``top_k``."""

    @abstractmethod
    async def remove(self, content_id: str, index: str | None = None) -> int:
        """Delete every chunk of a content item. Returns vectors removed."""

    @abstractmethod
    async def update(
        self,
        content_id: str,
        embeddings: list[list[float]] | None = None,
        metadata: ContentMetadata | None = None,
        index: str | None = None,
    ) -> None:
        """Replace only the supplied fields of a stored content item."""

    @abstractmethod
    async def scan(
        self,
        filters: SearchFilters | None = None,
        limit: int | None = None,
        index: str | None = None,
    ) -> list[VectorSearchResult]:
        """Enumerate stored chunks matching ``filters`` (score 0)."""

    async def batch_store(self, items: list[VectorStoreItem], index: str | None = None) -> int:
        """Same result as calling ``store`` per item."""
        total = 0
        for item in items:
            total += await self.store(item.content_id, item.embeddings, item.metadata, item.chunks, index)
        return total

    async def batch_search(
        self,
        embeddings: list[list[float]],
        top_k: int = 10,
        threshold: float = 0.0,
        filters: SearchFilters | None = None,
        index: str | None = None,
    ) -> list[list[VectorSearchResult]]:
        """Same result as calling ``search`` per query vector."""
        return [await self.search(e, top_k, threshold, filters, index) for e in embeddings]

    # Stats

    @abstractmethod
    async def get_storage_stats(self) -> StorageStats:
        """Vector and index counts with a memory breakdown."""

    @abstractmethod
    async def get_search_performance(self) -> SearchPerformance:
        """Rolling search latency, throughput and cache hit rate."""

    async def close(self) -> None:
        """Release client resources."""
