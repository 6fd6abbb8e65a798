"""
Tests for noteai_rag/rag/vector_store/qdrant.py
Runs against qdrant-client's in-process local mode.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient

from noteai_rag.core.errors import (
    ContentNotFoundError,
    DimensionMismatchError,
    IndexAlreadyExistsError,
    IndexNotFoundError,
    UnsupportedAlgorithmError,
)
from noteai_rag.rag.models import ContentType, DistanceMetric, IndexAlgorithm, SearchFilters, utcnow
from noteai_rag.rag.vector_store import QdrantVectorStore
from noteai_rag.rag.vector_store.qdrant import build_filter, point_id

INDEX = "notes"


@pytest_asyncio.fixture
async def store():
    qdrant = QdrantVectorStore(AsyncQdrantClient(location=":memory:"), default_index=INDEX)
    yield qdrant
    await qdrant.close()


@pytest_asyncio.fixture
async def populated(store, make_metadata, make_chunks):
    await store.create_index(INDEX, 3)
    items = [
        ("a", [1.0, 0.0, 0.0], "p1", ContentType.NOTE),
        ("b", [0.9, 0.1, 0.0], "p1", ContentType.TRANSCRIPTION),
        ("c", [0.0, 1.0, 0.0], "p2", ContentType.NOTE),
    ]
    for content_id, vector, project_id, content_type in items:
        await store.store(
            content_id,
            [vector],
            make_metadata(content_id, project_id=project_id, content_type=content_type),
            make_chunks(content_id, [f"text of {content_id}"]),
        )
    return store


class TestHelpers:
    """Test payload and filter helpers."""

    def test_point_ids_are_stable_uuids(self):
        assert point_id("a", "a-0") == point_id("a", "a-0")
        assert point_id("a", "a-0") != point_id("b", "a-0")

    def test_empty_filters_build_nothing(self):
        assert build_filter(None) is None
        assert build_filter(SearchFilters()) is None

    def test_filters_become_must_conditions(self):
        query_filter = build_filter(
            SearchFilters(project_ids=["p1"], content_types=[ContentType.NOTE], tags=["x"]), content_id="a"
        )
        assert [c.key for c in query_filter.must] == ["content_id", "project_id", "content_type", "tags"]


class TestQdrantVectorStore:
    """Test the collection-backed store."""

    @pytest.mark.asyncio
    async def test_create_index(self, store):
        info = await store.create_index(INDEX, 3, DistanceMetric.COSINE, IndexAlgorithm.HNSW)

        assert info.algorithm == IndexAlgorithm.HNSW
        assert await store.list_indexes() == [INDEX]
        with pytest.raises(IndexAlreadyExistsError):
            await store.create_index(INDEX, 3)

    @pytest.mark.asyncio
    async def test_ivf_is_unsupported(self, store):
        with pytest.raises(UnsupportedAlgorithmError):
            await store.create_index(INDEX, 3, algorithm=IndexAlgorithm.IVF)

    @pytest.mark.asyncio
    async def test_search_with_filters(self, populated):
        results = await populated.search([1.0, 0.0, 0.0], top_k=5)
        assert [r.content_id for r in results] == ["a", "b", "c"]

        results = await populated.search([1.0, 0.0, 0.0], threshold=0.5)
        assert [r.content_id for r in results] == ["a", "b"]

        results = await populated.search(
            [1.0, 0.0, 0.0], filters=SearchFilters(content_types=[ContentType.TRANSCRIPTION])
        )
        assert [r.content_id for r in results] == ["b"]
        assert results[0].metadata.content_type == ContentType.TRANSCRIPTION
        assert results[0].chunk.text == "text of b"

    @pytest.mark.asyncio
    async def test_store_replaces_previous_points(self, populated, make_metadata, make_chunks):
        await populated.store(
            "a",
            [[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]],
            make_metadata("a", project_id="p1"),
            make_chunks("a-v2", ["first", "second"]),
        )

        info = await populated.get_index_info(INDEX)
        assert info.total_vectors == 4
        texts = sorted(r.chunk.text for r in await populated.scan(filters=SearchFilters.for_project("p1")))
        assert texts == ["first", "second", "text of b"]

    @pytest.mark.asyncio
    async def test_dimension_checked(self, populated, make_metadata, make_chunks):
        with pytest.raises(DimensionMismatchError):
            await populated.search([1.0, 0.0])
        with pytest.raises(DimensionMismatchError):
            await populated.store("d", [[1.0]], make_metadata("d"), make_chunks("d", ["d"]))

    @pytest.mark.asyncio
    async def test_remove(self, populated):
        assert await populated.remove("c") == 1
        with pytest.raises(ContentNotFoundError):
            await populated.remove("c")
        assert (await populated.get_index_info(INDEX)).total_vectors == 2

    @pytest.mark.asyncio
    async def test_update_metadata(self, populated, make_metadata):
        await populated.update("c", metadata=make_metadata("c", project_id="p1", tags=["moved"]))

        results = await populated.scan(filters=SearchFilters(tags=["moved"]))
        assert [(r.content_id, r.metadata.project_id) for r in results] == [("c", "p1")]

    @pytest.mark.asyncio
    async def test_missing_index(self, store):
        with pytest.raises(IndexNotFoundError):
            await store.search([1.0, 0.0, 0.0])
        with pytest.raises(IndexNotFoundError):
            await store.delete_index(INDEX)

    @pytest.mark.asyncio
    async def test_stats(self, populated):
        stats = await populated.get_storage_stats()
        assert stats.total_vectors == 3
        assert stats.index_distribution == {INDEX: 3}

        await populated.search([1.0, 0.0, 0.0])
        performance = await populated.get_search_performance()
        assert performance.total_searches == 1


METRIC_CASES = [
    (DistanceMetric.COSINE, [1.0, 0.0, 0.0], [1.0, 1.0, 0.0]),
    (DistanceMetric.DOT_PRODUCT, [3.0, 0.0, 0.0], [1.0, 0.0, 0.0]),
    (DistanceMetric.EUCLIDEAN, [1.1, 0.0, 0.0], [3.0, 0.0, 0.0]),
    (DistanceMetric.MANHATTAN, [1.1, 0.0, 0.0], [3.0, 1.0, 0.0]),
]


class TestQdrantConsistency:
    """Test ordering, dimension checks and failed writes."""

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
        assert [r.content_id for r in await store.search([1.0, 0.0, 0.0], top_k=1)] == ["best"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("algorithm", [IndexAlgorithm.FLAT, IndexAlgorithm.HNSW, IndexAlgorithm.PQ])
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
    async def test_failed_store_restores_previous_points(self, store, make_metadata, make_chunks, monkeypatch):
        await store.create_index(INDEX, 3)
        await store.store("a", [[1.0, 0.0, 0.0]] * 150, make_metadata("a"), make_chunks("a", ["old"] * 150))

        upsert = store.client.upsert
        calls = []

        async def upsert_failing_second_batch(**kwargs):
            calls.append(len(kwargs["points"]))
            if len(calls) == 2:
                raise ConnectionError("qdrant unavailable")
            return await upsert(**kwargs)

        monkeypatch.setattr(store.client, "upsert", upsert_failing_second_batch)
        with pytest.raises(ConnectionError):
            await store.store(
                "a", [[0.0, 1.0, 0.0]] * 160, make_metadata("a"), make_chunks("a", ["new"] * 160)
            )

        entries = await store.scan()
        assert len(entries) == 150
        assert {e.chunk.text for e in entries} == {"old"}

    @pytest.mark.asyncio
    async def test_delete_waits_for_inflight_search(self, populated):
        lock = populated._index_lock(INDEX)

        async with lock.read():
            deletion = asyncio.create_task(populated.delete_index(INDEX))
            await asyncio.sleep(0)
            assert not deletion.done()

        await deletion
        assert await populated.list_indexes() == []

    @pytest.mark.asyncio
    async def test_content_locks_are_released(self, populated, make_metadata, make_chunks):
        await asyncio.gather(
            *[
                populated.store("a", [[1.0, 0.0, 0.0]], make_metadata("a"), make_chunks("a", [f"v{i}"]))
                for i in range(3)
            ]
        )
        await populated.remove("a")

        assert populated._content_locks == {}
        assert not populated._content_users
