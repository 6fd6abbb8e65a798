"""
Tests for noteai_rag/rag/vector_store/memory.py
In-memory flat and IVF indexes.
"""

import asyncio
from datetime import timedelta

import pytest

from noteai_rag.core.errors import (
    ChunkReferenceError,
    ConfigurationError,
    ContentNotFoundError,
    DimensionMismatchError,
    IndexAlreadyExistsError,
    IndexNotFoundError,
    UnsupportedAlgorithmError,
)
from noteai_rag.rag.models import (
    DistanceMetric,
    IndexAlgorithm,
    IndexConfiguration,
    SearchFilters,
    utcnow,
)
from noteai_rag.rag.scoring import normalize, raw_threshold
from noteai_rag.rag.vector_store import InMemoryVectorStore, VectorStoreItem

INDEX = "notes"


@pytest.fixture
def store():
    return InMemoryVectorStore(default_index=INDEX)


@pytest.fixture
def populate(store, make_metadata, make_chunks):
    """Store one single-chunk item per (content_id, vector, project_id)."""

    async def _populate(items, metric=DistanceMetric.COSINE):
        await store.create_index(INDEX, 3, metric)
        for content_id, vector, project_id in items:
            await store.store(
                content_id,
                [vector],
                make_metadata(content_id, project_id=project_id),
                make_chunks(content_id, [f"text of {content_id}"]),
            )

    return _populate


class TestIndexLifecycle:
    """Test index creation, listing and deletion."""

    @pytest.mark.asyncio
    async def test_create_and_describe(self, store):
        info = await store.create_index(INDEX, 3, "cosine", "flat")

        assert info.dimension == 3
        assert info.metric == DistanceMetric.COSINE
        assert info.total_vectors == 0
        assert await store.list_indexes() == [INDEX]
        assert await store.has_index(INDEX)

    @pytest.mark.asyncio
    async def test_duplicate_index_rejected(self, store):
        await store.create_index(INDEX, 3)
        with pytest.raises(IndexAlreadyExistsError):
            await store.create_index(INDEX, 3)

    @pytest.mark.asyncio
    async def test_invalid_parameters_rejected(self, store):
        with pytest.raises(ConfigurationError):
            await store.create_index(INDEX, 0)
        with pytest.raises(ConfigurationError):
            await store.create_index(INDEX, 3, metric="hamming")
        with pytest.raises(UnsupportedAlgorithmError):
            await store.create_index(INDEX, 3, algorithm=IndexAlgorithm.HNSW)

    @pytest.mark.asyncio
    async def test_delete_index(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1")])
        await store.delete_index(INDEX)

        assert await store.list_indexes() == []
        with pytest.raises(IndexNotFoundError):
            await store.search([1.0, 0.0, 0.0])

    @pytest.mark.asyncio
    async def test_missing_index(self, store):
        with pytest.raises(IndexNotFoundError):
            await store.get_index_info("nope")
        with pytest.raises(IndexNotFoundError):
            await store.delete_index("nope")


class TestStoreAndSearch:
    """Test storing, replacing and searching entries."""

    @pytest.mark.asyncio
    async def test_search_orders_best_first(self, populate, store):
        await populate(
            [
                ("close", [1.0, 0.1, 0.0], "p1"),
                ("exact", [1.0, 0.0, 0.0], "p1"),
                ("far", [0.0, 1.0, 0.0], "p1"),
            ]
        )

        results = await store.search([1.0, 0.0, 0.0], top_k=2)

        assert [r.content_id for r in results] == ["exact", "close"]
        assert results[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_threshold_filters_results(self, populate, store):
        await populate([("exact", [1.0, 0.0, 0.0], "p1"), ("far", [0.0, 1.0, 0.0], "p1")])

        results = await store.search([1.0, 0.0, 0.0], threshold=0.5)

        assert [r.content_id for r in results] == ["exact"]

    @pytest.mark.asyncio
    async def test_min_similarity_raises_threshold(self, populate, store):
        await populate([("exact", [1.0, 0.0, 0.0], "p1"), ("close", [1.0, 1.0, 0.0], "p1")])

        results = await store.search(
            [1.0, 0.0, 0.0], threshold=0.1, filters=SearchFilters(min_similarity=0.9)
        )

        assert [r.content_id for r in results] == ["exact"]

    @pytest.mark.asyncio
    async def test_project_filter(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1"), ("b", [1.0, 0.0, 0.0], "p2")])

        results = await store.search([1.0, 0.0, 0.0], filters=SearchFilters.for_project("p2"))

        assert [r.content_id for r in results] == ["b"]

    @pytest.mark.asyncio
    async def test_euclidean_scores_are_raw_distances(self, populate, store):
        await populate(
            [("near", [1.0, 0.0, 0.0], "p1"), ("far", [4.0, 0.0, 0.0], "p1")],
            metric=DistanceMetric.EUCLIDEAN,
        )

        results = await store.search([1.0, 0.0, 0.0], threshold=0.5)

        # 1 / (1 + 3) = 0.25 is below the threshold
        assert [r.content_id for r in results] == ["near"]
        assert results[0].score == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_invalid_search_parameters(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1")])

        with pytest.raises(ConfigurationError):
            await store.search([1.0, 0.0, 0.0], top_k=0)
        with pytest.raises(DimensionMismatchError):
            await store.search([1.0, 0.0])

    @pytest.mark.asyncio
    async def test_store_replaces_previous_entries(self, store, make_metadata, make_chunks):
        await store.create_index(INDEX, 3)
        metadata = make_metadata("doc")

        await store.store("doc", [[1.0, 0.0, 0.0]] * 3, metadata, make_chunks("doc", ["a", "b", "c"]))
        await store.store("doc", [[0.0, 1.0, 0.0]], metadata, make_chunks("doc-v2", ["new"]))

        info = await store.get_index_info(INDEX)
        assert info.total_vectors == 1
        results = await store.search([0.0, 1.0, 0.0])
        assert [r.chunk.text for r in results] == ["new"]

    @pytest.mark.asyncio
    async def test_store_validates_payload(self, store, make_metadata, make_chunks):
        await store.create_index(INDEX, 3)
        chunks = make_chunks("doc", ["a", "b"])

        with pytest.raises(ChunkReferenceError):
            await store.store("doc", [[1.0, 0.0, 0.0]], make_metadata("doc"), chunks)
        with pytest.raises(ChunkReferenceError):
            await store.store("doc", [[1.0, 0.0, 0.0]] * 2, make_metadata("other"), chunks)
        with pytest.raises(DimensionMismatchError):
            await store.store("doc", [[1.0, 0.0]] * 2, make_metadata("doc"), chunks)

        assert (await store.get_index_info(INDEX)).total_vectors == 0

    @pytest.mark.asyncio
    async def test_batch_store_is_all_or_nothing(self, store, make_metadata, make_chunks):
        await store.create_index(INDEX, 3)
        good = VectorStoreItem("a", [[1.0, 0.0, 0.0]], make_metadata("a"), make_chunks("a", ["a"]))
        bad = VectorStoreItem("b", [[1.0, 0.0]], make_metadata("b"), make_chunks("b", ["b"]))

        with pytest.raises(DimensionMismatchError):
            await store.batch_store([good, bad])
        assert (await store.get_index_info(INDEX)).total_vectors == 0

        assert await store.batch_store([good]) == 1

    @pytest.mark.asyncio
    async def test_batch_search_matches_single_search(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1"), ("b", [0.0, 1.0, 0.0], "p1")])
        queries = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]

        batched = await store.batch_search(queries, top_k=1)
        single = [await store.search(q, top_k=1) for q in queries]

        assert [[r.content_id for r in rs] for rs in batched] == [[r.content_id for r in rs] for rs in single]

    @pytest.mark.asyncio
    async def test_concurrent_stores_of_one_item_leave_one_version(self, store, make_metadata, make_chunks):
        await store.create_index(INDEX, 3)
        metadata = make_metadata("doc")

        await asyncio.gather(
            *[
                store.store("doc", [[1.0, 0.0, 0.0]] * n, metadata, make_chunks(f"v{n}", ["x"] * n))
                for n in range(1, 6)
            ]
        )

        results = await store.scan()
        assert len({r.chunk.id.split("-")[0] for r in results}) == 1
        assert len(results) == results[0].chunk.total_chunks


class TestRemoveAndUpdate:
    """Test removing and updating stored content."""

    @pytest.mark.asyncio
    async def test_remove(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1"), ("b", [0.0, 1.0, 0.0], "p1")])

        assert await store.remove("a") == 1
        assert [r.content_id for r in await store.scan()] == ["b"]
        with pytest.raises(ContentNotFoundError):
            await store.remove("a")

    @pytest.mark.asyncio
    async def test_update_metadata(self, populate, store, make_metadata):
        await populate([("a", [1.0, 0.0, 0.0], "p1")])

        await store.update("a", metadata=make_metadata("a", project_id="p2", tags=["moved"]))

        results = await store.search([1.0, 0.0, 0.0], filters=SearchFilters(tags=["moved"]))
        assert [r.metadata.project_id for r in results] == ["p2"]

    @pytest.mark.asyncio
    async def test_update_embeddings(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1")])

        await store.update("a", embeddings=[[0.0, 0.0, 1.0]])

        results = await store.search([0.0, 0.0, 1.0], threshold=0.9)
        assert [r.content_id for r in results] == ["a"]

    @pytest.mark.asyncio
    async def test_update_validation(self, populate, store, make_metadata):
        await populate([("a", [1.0, 0.0, 0.0], "p1")])

        with pytest.raises(ContentNotFoundError):
            await store.update("missing", metadata=make_metadata("missing"))
        with pytest.raises(ChunkReferenceError):
            await store.update("a", embeddings=[[1.0, 0.0, 0.0]] * 2)
        with pytest.raises(ChunkReferenceError):
            await store.update("a", metadata=make_metadata("b"))


class TestIvfAndStats:
    """Test IVF optimization, caching and statistics."""

    @pytest.mark.asyncio
    async def test_ivf_search_after_optimize(self, store, make_metadata, make_chunks):
        await store.create_index(
            INDEX, 3, algorithm=IndexAlgorithm.IVF, configuration=IndexConfiguration(num_lists=4, num_probes=4)
        )
        for i in range(16):
            vector = [1.0, i / 16, 0.0] if i % 2 else [0.0, i / 16, 1.0]
            await store.store(f"c{i}", [vector], make_metadata(f"c{i}"), make_chunks(f"c{i}", [f"t{i}"]))

        info = await store.optimize_index(INDEX)
        results = await store.search([1.0, 5 / 16, 0.0], top_k=1)

        assert info.algorithm == IndexAlgorithm.IVF
        assert info.last_optimized is not None
        # Probing every list is exact
        assert [r.content_id for r in results] == ["c5"]

    @pytest.mark.asyncio
    async def test_repeated_search_hits_cache(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1")])

        await store.search([1.0, 0.0, 0.0])
        await store.search([1.0, 0.0, 0.0])

        performance = await store.get_search_performance()
        assert performance.total_searches == 2
        assert performance.cache_hit_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_write_invalidates_cache(self, populate, store, make_metadata, make_chunks):
        await populate([("a", [1.0, 0.0, 0.0], "p1")])
        await store.search([1.0, 0.0, 0.0])

        await store.store("b", [[1.0, 0.0, 0.0]], make_metadata("b"), make_chunks("b", ["b"]))

        results = await store.search([1.0, 0.0, 0.0])
        assert {r.content_id for r in results} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_storage_stats(self, populate, store):
        await populate([("a", [1.0, 0.0, 0.0], "p1"), ("b", [0.0, 1.0, 0.0], "p1")])

        stats = await store.get_storage_stats()

        assert stats.total_vectors == 2
        assert stats.total_indices == 1
        assert stats.average_dimension == 3
        assert stats.index_distribution == {INDEX: 2}
        assert stats.memory.index_bytes == 2 * 3 * 4


# (metric, best vector, worse vector) for the query [1, 0, 0]. The worse entry
# is always the newer one, so recency alone would put it first.
METRIC_CASES = [
    (DistanceMetric.COSINE, [1.0, 0.0, 0.0], [1.0, 1.0, 0.0]),
    (DistanceMetric.DOT_PRODUCT, [3.0, 0.0, 0.0], [1.0, 0.0, 0.0]),
    (DistanceMetric.EUCLIDEAN, [1.1, 0.0, 0.0], [3.0, 0.0, 0.0]),
    (DistanceMetric.MANHATTAN, [1.1, 0.0, 0.0], [3.0, 1.0, 0.0]),
]


class TestMetricOrdering:
    """Test that every metric ranks by its own score direction."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("metric", "best", "worse"), METRIC_CASES)
    async def test_best_match_wins_over_recency(self, store, make_metadata, make_chunks, metric, best, worse):
        await store.create_index(INDEX, 3, metric)
        now = utcnow()
        await store.store(
            "best", [best], make_metadata("best", timestamp=now - timedelta(days=2)), make_chunks("best", ["b"])
        )
        await store.store(
            "worse", [worse], make_metadata("worse", timestamp=now), make_chunks("worse", ["w"])
        )

        results = await store.search([1.0, 0.0, 0.0], top_k=2)
        assert [r.content_id for r in results] == ["best", "worse"]
        relevance = [normalize(r.score, metric) for r in results]
        assert relevance[0] > relevance[1]

        top = await store.search([1.0, 0.0, 0.0], top_k=1)
        assert [r.content_id for r in top] == ["best"]

    @pytest.mark.asyncio
    async def test_equal_scores_break_by_recency_then_id(self, store, make_metadata, make_chunks):
        await store.create_index(INDEX, 3, DistanceMetric.DOT_PRODUCT)
        now = utcnow()
        for content_id, age in [("b", 1), ("a", 1), ("new", 0)]:
            await store.store(
                content_id,
                [[2.0, 0.0, 0.0]],
                make_metadata(content_id, timestamp=now - timedelta(hours=age)),
                make_chunks(content_id, [content_id]),
            )

        results = await store.search([1.0, 0.0, 0.0])

        assert [r.content_id for r in results] == ["new", "a", "b"]

    def test_dot_product_threshold_round_trips(self):
        bound = raw_threshold(0.8, DistanceMetric.DOT_PRODUCT)
        assert normalize(bound, DistanceMetric.DOT_PRODUCT) == pytest.approx(0.8)
        assert normalize(5.0, DistanceMetric.DOT_PRODUCT) > normalize(2.0, DistanceMetric.DOT_PRODUCT)


class TestDimensionInvariant:
    """Test that stores and searches reject vectors of the wrong dimension."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", [IndexAlgorithm.FLAT, IndexAlgorithm.IVF])
    @pytest.mark.parametrize("metric", list(DistanceMetric))
    async def test_wrong_dimension_rejected(self, store, make_metadata, make_chunks, metric, algorithm):
        await store.create_index(INDEX, 3, metric, algorithm)
        await store.store("a", [[1.0, 0.0, 0.0]], make_metadata("a"), make_chunks("a", ["a"]))

        with pytest.raises(DimensionMismatchError):
            await store.store("b", [[1.0, 0.0]], make_metadata("b"), make_chunks("b", ["b"]))
        with pytest.raises(DimensionMismatchError):
            await store.search([1.0, 0.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatchError):
            await store.update("a", embeddings=[[1.0]])

        assert (await store.get_index_info(INDEX)).total_vectors == 1

    @pytest.mark.asyncio
    async def test_identical_768_dimension_vector_ranks_first(self, store, make_metadata, make_chunks):
        first = [1.0 if i % 2 == 0 else 0.0 for i in range(768)]
        second = [float(i % 3) for i in range(768)]
        await store.create_index(INDEX, 768, DistanceMetric.COSINE)
        await store.store(
            "doc", [first, second], make_metadata("doc"), make_chunks("doc", ["first", "second"])
        )

        results = await store.search(first, top_k=2)

        assert results[0].chunk.text == "first"
        assert normalize(results[0].score, DistanceMetric.COSINE) == pytest.approx(1.0, abs=1e-5)
