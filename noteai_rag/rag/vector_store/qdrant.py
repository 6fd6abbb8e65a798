"""Qdrant vector store.

Each index is a Qdrant collection. Points carry the chunk and its content
metadata in the payload so that results can be rebuilt without a second
lookup, and so that project, type, language, tag and date filters run inside
Qdrant.
"""

import logging
import time
from datetime import datetime
from uuid import NAMESPACE_URL, uuid5

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models
from qdrant_client.http.models import Distance, PayloadSchemaType, VectorParams

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
    ContentType,
    DistanceMetric,
    IndexAlgorithm,
    IndexConfiguration,
    IndexInfo,
    Language,
    SearchFilters,
    SourceInfo,
    TimeRange,
    VectorSearchResult,
    utcnow,
)
from noteai_rag.rag.scoring import is_distance, normalize, raw_threshold
from noteai_rag.rag.vector_store.base import (
    MemoryUsage,
    ReadWriteLock,
    SearchMetrics,
    SearchPerformance,
    StorageStats,
    VectorStore,
    parse_algorithm,
    parse_metric,
    rank_results,
    validate_dimensions,
    validate_payload,
)

logger = logging.getLogger(__name__)

DISTANCES = {
    DistanceMetric.COSINE: Distance.COSINE,
    DistanceMetric.EUCLIDEAN: Distance.EUCLID,
    DistanceMetric.DOT_PRODUCT: Distance.DOT,
    DistanceMetric.MANHATTAN: Distance.MANHATTAN,
}

SUPPORTED_ALGORITHMS = frozenset({IndexAlgorithm.FLAT, IndexAlgorithm.HNSW, IndexAlgorithm.PQ})

UPSERT_BATCH_SIZE = 100
SCROLL_PAGE_SIZE = 256
_SCORE_EPSILON = 1e-9

KEYWORD_FIELDS = ("content_id", "project_id", "content_type", "language", "tags")


def point_id(content_id: str, chunk_id: str) -> str:
    """Deterministic point id; Qdrant only accepts UUIDs and integers."""
    return str(uuid5(NAMESPACE_URL, f"{content_id}:{chunk_id}"))


def build_payload(chunk: ContentChunk, metadata: ContentMetadata) -> dict:
    payload = metadata_payload(metadata)
    payload.update(
        {
            "chunk_id": chunk.id,
            "text": chunk.text,
            "start_index": chunk.start_index,
            "end_index": chunk.end_index,
            "position": chunk.position,
            "total_chunks": chunk.total_chunks,
            "speaker": chunk.speaker,
            "time_range": [chunk.time_range.start, chunk.time_range.end] if chunk.time_range else None,
        }
    )
    return payload


def metadata_payload(metadata: ContentMetadata) -> dict:
    """Content-level payload fields. Shared by every chunk of the item."""
    return {
        "content_id": metadata.content_id,
        "content_type": metadata.content_type.value,
        "project_id": metadata.project_id,
        "recording_id": metadata.recording_id,
        "document_id": metadata.document_id,
        "language": metadata.language.value,
        "tags": list(metadata.tags),
        "timestamp": metadata.timestamp.timestamp(),
        "created_at": metadata.timestamp.isoformat(),
        "source": {
            "title": metadata.source.title,
            "author": metadata.source.author,
            "url": metadata.source.url,
            "file_path": metadata.source.file_path,
            "page_number": metadata.source.page_number,
            "duration": metadata.source.duration,
        },
    }


def metadata_from_payload(payload: dict) -> ContentMetadata:
    return ContentMetadata(
        content_id=payload["content_id"],
        content_type=ContentType(payload["content_type"]),
        project_id=payload.get("project_id"),
        recording_id=payload.get("recording_id"),
        document_id=payload.get("document_id"),
        timestamp=datetime.fromisoformat(payload["created_at"]),
        language=Language(payload.get("language", Language.AUTO.value)),
        tags=list(payload.get("tags") or []),
        source=SourceInfo(**(payload.get("source") or {})),
    )


def chunk_from_payload(payload: dict) -> ContentChunk:
    time_range = payload.get("time_range")
    return ContentChunk(
        id=payload["chunk_id"],
        text=payload["text"],
        start_index=payload["start_index"],
        end_index=payload["end_index"],
        position=payload["position"],
        total_chunks=payload["total_chunks"],
        time_range=TimeRange(*time_range) if time_range else None,
        speaker=payload.get("speaker"),
    )


def build_filter(filters: SearchFilters | None, content_id: str | None = None) -> qdrant_models.Filter | None:
    """Translate search filters into a Qdrant filter."""
    conditions = []
    if content_id is not None:
        conditions.append(
            qdrant_models.FieldCondition(key="content_id", match=qdrant_models.MatchValue(value=content_id))
        )
    if filters is not None:
        if filters.project_ids:
            conditions.append(
                qdrant_models.FieldCondition(
                    key="project_id", match=qdrant_models.MatchAny(any=list(filters.project_ids))
                )
            )
        if filters.content_types:
            conditions.append(
                qdrant_models.FieldCondition(
                    key="content_type",
                    match=qdrant_models.MatchAny(any=[t.value for t in filters.content_types]),
                )
            )
        if filters.languages:
            conditions.append(
                qdrant_models.FieldCondition(
                    key="language",
                    match=qdrant_models.MatchAny(any=[lang.value for lang in filters.languages]),
                )
            )
        if filters.tags:
            # Array payloads match when any element matches
            conditions.append(
                qdrant_models.FieldCondition(key="tags", match=qdrant_models.MatchAny(any=list(filters.tags)))
            )
        if filters.date_from or filters.date_to:
            conditions.append(
                qdrant_models.FieldCondition(
                    key="timestamp",
                    range=qdrant_models.Range(
                        gte=filters.date_from.timestamp() if filters.date_from else None,
                        lte=filters.date_to.timestamp() if filters.date_to else None,
                    ),
                )
            )
    if not conditions:
        return None
    return qdrant_models.Filter(must=conditions)


class QdrantVectorStore(VectorStore):
    """Vector store backed by Qdrant collections.

    Algorithms map onto Qdrant as follows:
    - flat: exact search (``SearchParams(exact=True)``)
    - hnsw: the collection's HNSW graph with the configured ``m`` and ``ef_construct``
    - pq: product quantization with ``pq_segments`` as compression ratio

    IVF has no Qdrant counterpart and is rejected.

    Entry reads and writes share a per-collection lock that deleting or
    optimizing a collection takes exclusively.
    """

    backend_name = "qdrant"

    def __init__(self, client: AsyncQdrantClient, default_index: str | None = None):
        super().__init__(default_index)
        self.client = client
        self._indexes: dict[str, IndexInfo] = {}
        self._locks: dict[str, ReadWriteLock] = {}
        self._metrics = SearchMetrics()

    def _index_lock(self, name: str) -> ReadWriteLock:
        return self._locks.setdefault(name, ReadWriteLock())

    # ----------------------------------------
    # Index lifecycle
    # ----------------------------------------

    async def create_index(
        self,
        name: str,
        dimension: int,
        metric: "DistanceMetric | str" = DistanceMetric.COSINE,
        algorithm: "IndexAlgorithm | str" = IndexAlgorithm.FLAT,
        configuration: IndexConfiguration | None = None,
    ) -> IndexInfo:
        """Create a collection for an index.

        Args:
            name: Collection name
            dimension: Vector dimension, fixed for the life of the index
            metric: Distance metric
            algorithm: flat, hnsw or pq
            configuration: Algorithm parameters

        Returns:
            Description of the new index
        """
        metric = parse_metric(metric)
        algorithm = parse_algorithm(algorithm)
        configuration = configuration or IndexConfiguration()
        if not name:
            raise ConfigurationError("Index name must not be empty")
        if dimension <= 0:
            raise ConfigurationError(f"Index dimension must be positive, got {dimension}")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithmError(algorithm.value, self.backend_name)
        if await self.client.collection_exists(name):
            raise IndexAlreadyExistsError(name)

        quantization = None
        if algorithm == IndexAlgorithm.PQ:
            try:
                compression = qdrant_models.CompressionRatio(f"x{configuration.pq_segments}")
            except ValueError:
                raise ConfigurationError(
                    f"Unsupported product quantization ratio: {configuration.pq_segments}"
                ) from None
            quantization = qdrant_models.ProductQuantization(
                product=qdrant_models.ProductQuantizationConfig(compression=compression, always_ram=True)
            )

        await self.client.create_collection(
            collection_name=name,
            vectors_config=VectorParams(size=dimension, distance=DISTANCES[metric]),
            hnsw_config=qdrant_models.HnswConfigDiff(
                m=configuration.m,
                ef_construct=configuration.ef_construction,
            ),
            quantization_config=quantization,
        )

        # Payload indexes for the filterable fields
        for field_name in KEYWORD_FIELDS:
            await self.client.create_payload_index(
                collection_name=name,
                field_name=field_name,
                field_schema=PayloadSchemaType.KEYWORD,
            )
        await self.client.create_payload_index(
            collection_name=name,
            field_name="timestamp",
            field_schema=PayloadSchemaType.FLOAT,
        )

        info = IndexInfo(
            name=name,
            dimension=dimension,
            metric=metric,
            algorithm=algorithm,
            total_vectors=0,
            index_size_bytes=0,
            created_at=utcnow(),
            configuration=configuration,
        )
        self._indexes[name] = info
        logger.info(
            f"[VectorStore] Created collection '{name}' ({dimension} dims, {metric.value}, {algorithm.value})"
        )
        return info

    async def delete_index(self, name: str) -> None:
        async with self._index_lock(name).write():
            if not await self.client.collection_exists(name):
                raise IndexNotFoundError(name)
            await self.client.delete_collection(name)
            self._indexes.pop(name, None)
            self._locks.pop(name, None)
        logger.info(f"[VectorStore] Deleted collection '{name}'")

    async def optimize_index(self, name: str) -> IndexInfo:
        """Qdrant merges and indexes segments in the background; this refreshes counts."""
        async with self._index_lock(name).write():
            info = await self.get_index_info(name)
            info.last_optimized = utcnow()
        return info

    async def get_index_info(self, name: str) -> IndexInfo:
        info = await self._describe(name)
        count = await self.client.count(collection_name=name, exact=True)
        info.total_vectors = count.count
        info.index_size_bytes = count.count * info.dimension * 4
        return info

    async def list_indexes(self) -> list[str]:
        response = await self.client.get_collections()
        return sorted(c.name for c in response.collections)

    async def _describe(self, name: str) -> IndexInfo:
        """Registry entry for a collection, loaded from Qdrant when created elsewhere."""
        if not await self.client.collection_exists(name):
            self._indexes.pop(name, None)
            raise IndexNotFoundError(name)
        info = self._indexes.get(name)
        if info is None:
            collection = await self.client.get_collection(name)
            params = collection.config.params.vectors
            metric = next(m for m, d in DISTANCES.items() if d == params.distance)
            info = IndexInfo(
                name=name,
                dimension=params.size,
                metric=metric,
                algorithm=IndexAlgorithm.HNSW,
                total_vectors=collection.points_count or 0,
                index_size_bytes=0,
                created_at=utcnow(),
            )
            self._indexes[name] = info
        return info

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
        """Replace every point of a content item.

        The previous points are read back (with vectors) first. If any upsert
        or the stale-point cleanup fails, the item's points are deleted and the
        previous ones re-upserted before the error propagates.
        """
        name = self._resolve(index)
        async with self._index_lock(name).read(), self._content_lock(name, content_id):
            info = await self._describe(name)
            validate_payload(content_id, embeddings, metadata, chunks, info.dimension, name)

            points = [
                qdrant_models.PointStruct(
                    id=point_id(content_id, chunk.id),
                    vector=list(embedding),
                    payload=build_payload(chunk, metadata),
                )
                for chunk, embedding in zip(chunks, embeddings, strict=True)
            ]
            selector = build_filter(None, content_id=content_id)
            previous = await self._scroll(name, selector, with_vectors=True)

            try:
                await self._upsert(name, points)
                # Drop points from a previous version that the new chunk set does not overwrite
                stale = qdrant_models.Filter(
                    must=selector.must,
                    must_not=[qdrant_models.HasIdCondition(has_id=[p.id for p in points])],
                )
                await self.client.delete(
                    collection_name=name,
                    points_selector=qdrant_models.FilterSelector(filter=stale),
                    wait=True,
                )
            except BaseException:
                logger.warning(
                    f"[VectorStore] Store of '{content_id}' into '{name}' failed, "
                    f"restoring {len(previous)} previous points"
                )
                await self._restore(name, selector, previous)
                raise

        logger.debug(f"[VectorStore] Upserted {len(points)} points for '{content_id}' into '{name}'")
        return len(points)

    async def _upsert(self, name: str, points: list[qdrant_models.PointStruct]) -> None:
        # Batched to avoid timeouts on large payloads
        for i in range(0, len(points), UPSERT_BATCH_SIZE):
            await self.client.upsert(
                collection_name=name, points=points[i : i + UPSERT_BATCH_SIZE], wait=True
            )

    async def _restore(self, name: str, selector: qdrant_models.Filter, previous: list) -> None:
        """Put a content item back to the points read before a failed store."""
        await self.client.delete(
            collection_name=name,
            points_selector=qdrant_models.FilterSelector(filter=selector),
            wait=True,
        )
        await self._upsert(
            name,
            [qdrant_models.PointStruct(id=p.id, vector=p.vector, payload=p.payload) for p in previous],
        )

    async def remove(self, content_id: str, index: str | None = None) -> int:
        name = self._resolve(index)
        async with self._index_lock(name).read(), self._content_lock(name, content_id):
            await self._describe(name)
            selector = build_filter(None, content_id=content_id)
            count = (await self.client.count(collection_name=name, count_filter=selector, exact=True)).count
            if count == 0:
                raise ContentNotFoundError(content_id, index=name)
            await self.client.delete(
                collection_name=name,
                points_selector=qdrant_models.FilterSelector(filter=selector),
                wait=True,
            )

        logger.debug(f"[VectorStore] Deleted {count} points for '{content_id}' from '{name}'")
        return count

    async def update(
        self,
        content_id: str,
        embeddings: list[list[float]] | None = None,
        metadata: ContentMetadata | None = None,
        index: str | None = None,
    ) -> None:
        name = self._resolve(index)
        async with self._index_lock(name).read(), self._content_lock(name, content_id):
            info = await self._describe(name)
            points = await self._scroll(name, build_filter(None, content_id=content_id))
            if not points:
                raise ContentNotFoundError(content_id, index=name)
            points.sort(key=lambda p: p.payload["position"])

            if embeddings is not None:
                if len(embeddings) != len(points):
                    raise ChunkReferenceError(
                        f"{len(embeddings)} embeddings supplied for {len(points)} stored chunks",
                        content_id=content_id,
                    )
                validate_dimensions(embeddings, info.dimension, name)
            if metadata is not None and metadata.content_id != content_id:
                raise ChunkReferenceError(
                    f"Metadata belongs to '{metadata.content_id}', not '{content_id}'",
                    content_id=content_id,
                )

            if embeddings is not None:
                await self.client.update_vectors(
                    collection_name=name,
                    points=[
                        qdrant_models.PointVectors(id=p.id, vector=list(e))
                        for p, e in zip(points, embeddings, strict=True)
                    ],
                    wait=True,
                )
            if metadata is not None:
                await self.client.set_payload(
                    collection_name=name,
                    payload=metadata_payload(metadata),
                    points=[p.id for p in points],
                    wait=True,
                )

    async def scan(
        self,
        filters: SearchFilters | None = None,
        limit: int | None = None,
        index: str | None = None,
    ) -> list[VectorSearchResult]:
        name = self._resolve(index)
        async with self._index_lock(name).read():
            await self._describe(name)
            points = await self._scroll(name, build_filter(filters), limit)
        return [
            VectorSearchResult(chunk_from_payload(p.payload), metadata_from_payload(p.payload), 0.0)
            for p in points
        ]

    async def _scroll(
        self,
        name: str,
        scroll_filter: qdrant_models.Filter | None,
        limit: int | None = None,
        with_vectors: bool = False,
    ) -> list:
        points = []
        offset = None
        while True:
            page_size = SCROLL_PAGE_SIZE if limit is None else min(SCROLL_PAGE_SIZE, limit - len(points))
            page, offset = await self.client.scroll(
                collection_name=name,
                scroll_filter=scroll_filter,
                limit=page_size,
                offset=offset,
                with_payload=True,
                with_vectors=with_vectors,
            )
            points.extend(page)
            if offset is None or (limit is not None and len(points) >= limit):
                return points

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
        """Search a collection.

        Args:
            embedding: Query vector
            top_k: Maximum results
            threshold: Minimum normalized relevance
            filters: Metadata filters
            index: Collection to search (defaults to the store's default index)

        Returns:
            Results best first with raw Qdrant scores
        """
        name = self._resolve(index)
        if top_k <= 0:
            raise ConfigurationError(f"top_k must be positive, got {top_k}")
        async with self._index_lock(name).read():
            info = await self._describe(name)
            validate_dimensions([embedding], info.dimension, name)
            if filters is not None:
                threshold = filters.effective_threshold(threshold)

            score_threshold = None
            bound = raw_threshold(threshold, info.metric)
            if bound is not None and not is_distance(info.metric):
                score_threshold = bound - _SCORE_EPSILON

            start = time.perf_counter()
            response = await self.client.query_points(
                collection_name=name,
                query=list(embedding),
                limit=top_k,
                query_filter=build_filter(filters),
                score_threshold=score_threshold,
                search_params=qdrant_models.SearchParams(
                    exact=info.algorithm == IndexAlgorithm.FLAT,
                    hnsw_ef=(
                        info.configuration.ef_construction if info.algorithm == IndexAlgorithm.HNSW else None
                    ),
                ),
                with_payload=True,
            )
            self._metrics.record(time.perf_counter() - start)

        results = [
            VectorSearchResult(chunk_from_payload(p.payload), metadata_from_payload(p.payload), p.score)
            for p in response.points
            if normalize(p.score, info.metric) >= threshold - _SCORE_EPSILON
        ]
        return rank_results(results, info.metric)

    # ----------------------------------------
    # Stats
    # ----------------------------------------

    async def get_storage_stats(self) -> StorageStats:
        distribution = {}
        dimensions = {}
        for name in await self.list_indexes():
            info = await self.get_index_info(name)
            distribution[name] = info.total_vectors
            dimensions[name] = info.dimension
        total = sum(distribution.values())
        index_bytes = sum(distribution[n] * dimensions[n] * 4 for n in distribution)
        return StorageStats(
            total_vectors=total,
            total_indices=len(distribution),
            storage_bytes=index_bytes,
            average_dimension=(
                sum(distribution[n] * dimensions[n] for n in distribution) / total if total else 0.0
            ),
            index_distribution=distribution,
            memory=MemoryUsage(index_bytes=index_bytes, metadata_bytes=0, cache_bytes=0),
        )

    async def get_search_performance(self) -> SearchPerformance:
        return self._metrics.snapshot()

    async def close(self) -> None:
        await self.client.close()
