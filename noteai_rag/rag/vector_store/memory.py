"""In-process vector store.

Vectors live in numpy matrices per index. Two algorithms are supported:

- flat: exact scan over every candidate
- ivf: k-means lists built by ``optimize_index``; searches probe the
  ``num_probes`` nearest lists (approximate). Until the first optimization an
  IVF index behaves like a flat one.
"""

import hashlib
import logging
import math
import time
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime

import numpy as np

from noteai_rag.core.errors import (
    ChunkReferenceError,
    ConfigurationError,
    ContentNotFoundError,
    IndexAlreadyExistsError,
    IndexNotFoundError,
    UnsupportedAlgorithmError,
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
from noteai_rag.rag.scoring import normalize_array, raw_scores
from noteai_rag.rag.vector_store.base import (
    MemoryUsage,
    ReadWriteLock,
    SearchMetrics,
    SearchPerformance,
    StorageStats,
    VectorStore,
    VectorStoreItem,
    parse_algorithm,
    parse_metric,
    rank_results,
    validate_dimensions,
    validate_payload,
)

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = frozenset({IndexAlgorithm.FLAT, IndexAlgorithm.IVF})

# Rough per-entry bookkeeping overhead for memory estimates
_ENTRY_OVERHEAD_BYTES = 256
_SCORE_EPSILON = 1e-9


@dataclass
class _Entry:
    content_id: str
    chunk: ContentChunk
    vector: np.ndarray


@dataclass
class _Index:
    name: str
    dimension: int
    metric: DistanceMetric
    algorithm: IndexAlgorithm
    configuration: IndexConfiguration
    created_at: datetime = field(default_factory=utcnow)
    last_optimized: datetime | None = None
    entries: dict[str, _Entry] = field(default_factory=dict)
    contents: dict[str, list[str]] = field(default_factory=dict)
    metadata: dict[str, ContentMetadata] = field(default_factory=dict)
    lock: ReadWriteLock = field(default_factory=ReadWriteLock)
    centroids: np.ndarray | None = None
    assignments: dict[str, int] = field(default_factory=dict)
    _ids: list[str] | None = None
    _matrix: np.ndarray | None = None

    def invalidate(self) -> None:
        self._ids = None
        self._matrix = None

    def matrix(self) -> tuple[list[str], np.ndarray]:
        if self._matrix is None:
            self._ids = list(self.entries)
            if self._ids:
                self._matrix = np.vstack([self.entries[i].vector for i in self._ids])
            else:
                self._matrix = np.zeros((0, self.dimension), dtype=np.float32)
        return self._ids, self._matrix

    def cluster_space(self, vectors: np.ndarray) -> np.ndarray:
        """Cosine indexes cluster on unit vectors."""
        if self.metric != DistanceMetric.COSINE:
            return vectors
        norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
        return np.divide(vectors, norms, out=np.zeros_like(vectors), where=norms > 0)

    def nearest_lists(self, vectors: np.ndarray, count: int) -> np.ndarray:
        points = self.cluster_space(np.atleast_2d(vectors))
        distances = np.linalg.norm(points[:, None, :] - self.centroids[None, :, :], axis=2)
        return np.argsort(distances, axis=1)[:, :count]

    def add(self, content_id: str, chunks: list[ContentChunk], embeddings: list[list[float]]) -> None:
        ids = []
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            vector = np.asarray(embedding, dtype=np.float32)
            self.entries[chunk.id] = _Entry(content_id, replace(chunk, embedding=None), vector)
            ids.append(chunk.id)
            if self.centroids is not None:
                self.assignments[chunk.id] = int(self.nearest_lists(vector, 1)[0, 0])
        self.contents[content_id] = ids
        self.invalidate()

    def drop(self, content_id: str) -> int:
        ids = self.contents.pop(content_id, [])
        for chunk_id in ids:
            self.entries.pop(chunk_id, None)
            self.assignments.pop(chunk_id, None)
        self.metadata.pop(content_id, None)
        self.invalidate()
        return len(ids)

    def vector_bytes(self) -> int:
        total = sum(e.vector.nbytes for e in self.entries.values())
        if self.centroids is not None:
            total += self.centroids.nbytes
        return total

    def metadata_bytes(self) -> int:
        return sum(
            len(e.chunk.text.encode("utf-8")) + _ENTRY_OVERHEAD_BYTES for e in self.entries.values()
        )

    def info(self) -> IndexInfo:
        return IndexInfo(
            name=self.name,
            dimension=self.dimension,
            metric=self.metric,
            algorithm=self.algorithm,
            total_vectors=len(self.entries),
            index_size_bytes=self.vector_bytes(),
            created_at=self.created_at,
            last_optimized=self.last_optimized,
            configuration=self.configuration,
        )


class InMemoryVectorStore(VectorStore):
    """Flat and IVF indexes held in process memory.

    Writes, optimization and deletion take an index-wide writer lock, searches
    take a reader lock. Writes to one index therefore apply one at a time in
    lock-acquisition order, which makes the last call to complete the winner
    for a given content id.
    """

    backend_name = "memory"

    def __init__(self, default_index: str | None = None, search_cache_size: int = 256):
        super().__init__(default_index)
        self._indexes: dict[str, _Index] = {}
        self._metrics = SearchMetrics()
        self._cache_size = search_cache_size
        self._cache: OrderedDict[tuple, list[VectorSearchResult]] = OrderedDict()

    # ----------------------------------------
    # Index lifecycle
    # ----------------------------------------

    def _get(self, name: str) -> _Index:
        idx = self._indexes.get(name)
        if idx is None:
            raise IndexNotFoundError(name)
        return idx

    @asynccontextmanager
    async def _locked(self, name: str, exclusive: bool) -> AsyncIterator[_Index]:
        idx = self._get(name)
        guard = idx.lock.write() if exclusive else idx.lock.read()
        async with guard:
            # The index may have been deleted while we waited
            if self._indexes.get(name) is not idx:
                raise IndexNotFoundError(name)
            yield idx

    async def create_index(
        self,
        name: str,
        dimension: int,
        metric: "DistanceMetric | str" = DistanceMetric.COSINE,
        algorithm: "IndexAlgorithm | str" = IndexAlgorithm.FLAT,
        configuration: IndexConfiguration | None = None,
    ) -> IndexInfo:
        metric = parse_metric(metric)
        algorithm = parse_algorithm(algorithm)
        if not name:
            raise ConfigurationError("Index name must not be empty")
        if dimension <= 0:
            raise ConfigurationError(f"Index dimension must be positive, got {dimension}")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithmError(algorithm.value, self.backend_name)
        if name in self._indexes:
            raise IndexAlreadyExistsError(name)

        idx = _Index(
            name=name,
            dimension=dimension,
            metric=metric,
            algorithm=algorithm,
            configuration=configuration or IndexConfiguration(),
        )
        self._indexes[name] = idx
        logger.info(
            f"[VectorStore] Created index '{name}' ({dimension} dims, {metric.value}, {algorithm.value})"
        )
        return idx.info()

    async def delete_index(self, name: str) -> None:
        async with self._locked(name, exclusive=True) as idx:
            del self._indexes[name]
            self._invalidate_cache(name)
            logger.info(f"[VectorStore] Deleted index '{name}' with {len(idx.entries)} vectors")

    async def optimize_index(self, name: str) -> IndexInfo:
        async with self._locked(name, exclusive=True) as idx:
            if idx.algorithm == IndexAlgorithm.IVF:
                self._build_lists(idx)
            idx.invalidate()
            idx.last_optimized = utcnow()
            self._invalidate_cache(name)
            return idx.info()

    async def get_index_info(self, name: str) -> IndexInfo:
        return self._get(name).info()

    async def list_indexes(self) -> list[str]:
        return sorted(self._indexes)

    def _build_lists(self, idx: _Index, iterations: int = 10) -> None:
        ids, matrix = idx.matrix()
        if not ids:
            idx.centroids = None
            idx.assignments = {}
            return

        points = idx.cluster_space(matrix.astype(np.float64))
        k = max(1, min(idx.configuration.num_lists, int(math.sqrt(len(ids)))))
        rng = np.random.default_rng(0)
        centroids = points[rng.choice(len(ids), size=k, replace=False)].copy()

        labels = np.zeros(len(ids), dtype=np.int64)
        for _ in range(iterations):
            distances = np.linalg.norm(points[:, None, :] - centroids[None, :, :], axis=2)
            labels = np.argmin(distances, axis=1)
            for j in range(k):
                members = points[labels == j]
                if len(members):
                    centroids[j] = members.mean(axis=0)

        idx.centroids = centroids
        idx.assignments = {chunk_id: int(label) for chunk_id, label in zip(ids, labels, strict=True)}
        logger.info(f"[VectorStore] Built {k} IVF lists for '{idx.name}' over {len(ids)} vectors")

    # ----------------------------------------
    # Entries
    # ----------------------------------------

    async def store(
        self,
        content_id: str,
        embeddings: list[list[float]],
        metadata: ContentMetadata,
        chunks: list[ContentChunk],
        index: str | None = None,
    ) -> int:
        name = self._resolve(index)
        async with self._locked(name, exclusive=True) as idx:
            validate_payload(content_id, embeddings, metadata, chunks, idx.dimension, name)
            replaced = idx.drop(content_id)
            idx.add(content_id, chunks, embeddings)
            idx.metadata[content_id] = metadata
            self._invalidate_cache(name)

        logger.debug(
            f"[VectorStore] Stored {len(chunks)} vectors for '{content_id}' in '{name}'"
            + (f" (replaced {replaced})" if replaced else "")
        )
        return len(chunks)

    async def batch_store(self, items: list[VectorStoreItem], index: str | None = None) -> int:
        name = self._resolve(index)
        async with self._locked(name, exclusive=True) as idx:
            # Validate everything first so a bad item leaves the index untouched
            for item in items:
                validate_payload(
                    item.content_id, item.embeddings, item.metadata, item.chunks, idx.dimension, name
                )
            for item in items:
                idx.drop(item.content_id)
                idx.add(item.content_id, item.chunks, item.embeddings)
                idx.metadata[item.content_id] = item.metadata
            self._invalidate_cache(name)
        return sum(len(item.chunks) for item in items)

    async def remove(self, content_id: str, index: str | None = None) -> int:
        name = self._resolve(index)
        async with self._locked(name, exclusive=True) as idx:
            if content_id not in idx.contents:
                raise ContentNotFoundError(content_id, index=name)
            removed = idx.drop(content_id)
            self._invalidate_cache(name)

        logger.debug(f"[VectorStore] Removed {removed} vectors for '{content_id}' from '{name}'")
        return removed

    async def update(
        self,
        content_id: str,
        embeddings: list[list[float]] | None = None,
        metadata: ContentMetadata | None = None,
        index: str | None = None,
    ) -> None:
        name = self._resolve(index)
        async with self._locked(name, exclusive=True) as idx:
            if content_id not in idx.contents:
                raise ContentNotFoundError(content_id, index=name)
            chunk_ids = idx.contents[content_id]

            if embeddings is not None:
                if len(embeddings) != len(chunk_ids):
                    raise ChunkReferenceError(
                        f"{len(embeddings)} embeddings supplied for {len(chunk_ids)} stored chunks",
                        content_id=content_id,
                    )
                validate_dimensions(embeddings, idx.dimension, name)
            if metadata is not None and metadata.content_id != content_id:
                raise ChunkReferenceError(
                    f"Metadata belongs to '{metadata.content_id}', not '{content_id}'",
                    content_id=content_id,
                )

            if embeddings is not None:
                chunks = [idx.entries[chunk_id].chunk for chunk_id in chunk_ids]
                idx.add(content_id, chunks, embeddings)
            if metadata is not None:
                idx.metadata[content_id] = metadata
            self._invalidate_cache(name)

    async def scan(
        self,
        filters: SearchFilters | None = None,
        limit: int | None = None,
        index: str | None = None,
    ) -> list[VectorSearchResult]:
        name = self._resolve(index)
        async with self._locked(name, exclusive=False) as idx:
            results = []
            for content_id, chunk_ids in idx.contents.items():
                metadata = idx.metadata[content_id]
                if filters and not filters.matches(metadata):
                    continue
                for chunk_id in chunk_ids:
                    results.append(VectorSearchResult(idx.entries[chunk_id].chunk, metadata, 0.0))
                    if limit is not None and len(results) >= limit:
                        return results
            return results

    # ----------------------------------------
    # Search
    # ----------------------------------------

    async def search(
        self,
        embedding: list[float],
        top_k: int = 10,
        threshold: float = 0.0,
        filters: SearchFilters | None = None,
        index: str | None = None,
    ) -> list[VectorSearchResult]:
        name = self._resolve(index)
        start = time.perf_counter()
        async with self._locked(name, exclusive=False) as idx:
            results = self._search_locked(idx, embedding, top_k, threshold, filters)
        self._metrics.record(time.perf_counter() - start)
        return results

    async def batch_search(
        self,
        embeddings: list[list[float]],
        top_k: int = 10,
        threshold: float = 0.0,
        filters: SearchFilters | None = None,
        index: str | None = None,
    ) -> list[list[VectorSearchResult]]:
        name = self._resolve(index)
        batches = []
        async with self._locked(name, exclusive=False) as idx:
            for embedding in embeddings:
                start = time.perf_counter()
                batches.append(self._search_locked(idx, embedding, top_k, threshold, filters))
                self._metrics.record(time.perf_counter() - start)
        return batches

    def _search_locked(
        self,
        idx: _Index,
        embedding: list[float],
        top_k: int,
        threshold: float,
        filters: SearchFilters | None,
    ) -> list[VectorSearchResult]:
        if top_k <= 0:
            raise ConfigurationError(f"top_k must be positive, got {top_k}")
        validate_dimensions([embedding], idx.dimension, idx.name)

        if filters is not None:
            threshold = filters.effective_threshold(threshold)

        key = self._cache_key(idx.name, embedding, top_k, threshold, filters)
        cached = self._cache.get(key)
        self._metrics.record_cache(cached is not None)
        if cached is not None:
            self._cache.move_to_end(key)
            return list(cached)

        ids, matrix = idx.matrix()
        query = np.asarray(embedding, dtype=np.float32)

        mask = np.ones(len(ids), dtype=bool)
        if filters is not None:
            mask &= np.array([filters.matches(idx.metadata[idx.entries[i].content_id]) for i in ids], dtype=bool)
        if idx.algorithm == IndexAlgorithm.IVF and idx.centroids is not None:
            probes = min(idx.configuration.num_probes, len(idx.centroids))
            lists = set(idx.nearest_lists(query.astype(np.float64), probes)[0].tolist())
            mask &= np.array([idx.assignments.get(i) in lists for i in ids], dtype=bool)

        positions = np.nonzero(mask)[0]
        if len(positions) == 0:
            results: list[VectorSearchResult] = []
        else:
            raw = raw_scores(matrix[positions], query, idx.metric)
            relevance = normalize_array(raw, idx.metric)
            passing = np.nonzero(relevance >= threshold - _SCORE_EPSILON)[0]
            results = []
            for p in passing:
                entry = idx.entries[ids[positions[p]]]
                results.append(
                    VectorSearchResult(entry.chunk, idx.metadata[entry.content_id], float(raw[p]))
                )
            results = rank_results(results, idx.metric)[:top_k]

        self._cache[key] = results
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return list(results)

    @staticmethod
    def _cache_key(name, embedding, top_k, threshold, filters) -> tuple:
        digest = hashlib.sha256(np.asarray(embedding, dtype=np.float32).tobytes()).hexdigest()
        filter_key = repr(sorted(filters.to_dict().items())) if filters else ""
        return (name, digest, top_k, round(threshold, 9), filter_key)

    def _invalidate_cache(self, name: str) -> None:
        for key in [k for k in self._cache if k[0] == name]:
            del self._cache[key]

    # ----------------------------------------
    # Stats
    # ----------------------------------------

    async def get_storage_stats(self) -> StorageStats:
        indexes = list(self._indexes.values())
        total_vectors = sum(len(i.entries) for i in indexes)
        index_bytes = sum(i.vector_bytes() for i in indexes)
        metadata_bytes = sum(i.metadata_bytes() for i in indexes)
        cache_bytes = sum(len(v) * _ENTRY_OVERHEAD_BYTES for v in self._cache.values())
        average_dimension = (
            sum(i.dimension * len(i.entries) for i in indexes) / total_vectors if total_vectors else 0.0
        )
        return StorageStats(
            total_vectors=total_vectors,
            total_indices=len(indexes),
            storage_bytes=index_bytes + metadata_bytes,
            average_dimension=average_dimension,
            index_distribution={i.name: len(i.entries) for i in indexes},
            memory=MemoryUsage(
                index_bytes=index_bytes, metadata_bytes=metadata_bytes, cache_bytes=cache_bytes
            ),
        )

    async def get_search_performance(self) -> SearchPerformance:
        return self._metrics.snapshot()
