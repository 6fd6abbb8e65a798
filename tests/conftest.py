"""
Pytest configuration for the NoteAI RAG test suite.

Provides:
- A local hashing embedder (no network) with a small model loaded
- A dict-backed Redis double for the embedding cache
- An in-memory vector store, chunker, processor, retriever and service
- Factories for metadata and chunks
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from noteai_rag.rag.chunking import ChunkOptions, TextChunker
from noteai_rag.rag.embedder import (
    EmbeddingConfiguration,
    EmbeddingModel,
    EmbeddingProvider,
    HashingEmbeddingBackend,
)
from noteai_rag.rag.embedding_cache import EmbeddingCache
from noteai_rag.rag.models import (
    ContentChunk,
    ContentMetadata,
    ContentType,
    Language,
    SearchOptions,
    SourceInfo,
    utcnow,
)
from noteai_rag.rag.processor import ContentProcessor
from noteai_rag.rag.retriever import Retriever
from noteai_rag.rag.service import RAGService
from noteai_rag.rag.vector_store import InMemoryVectorStore

INDEX_NAME = "test_index"


class FakeRedis:
    """Redis commands used by the embedding cache, held in dicts. Keys never expire."""

    def __init__(self):
        self.values: dict[str, bytes] = {}
        self.sorted_sets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    def pipeline(self) -> "FakePipeline":
        return FakePipeline(self)

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl

    async def zadd(self, key, mapping):
        self.sorted_sets.setdefault(key, {}).update(mapping)

    async def zcard(self, key):
        return len(self.sorted_sets.get(key, {}))

    async def zrange(self, key, start, end):
        members = sorted(self.sorted_sets.get(key, {}).items(), key=lambda m: m[1])
        return [member for member, _ in members][start : None if end == -1 else end + 1]

    async def zpopmin(self, key, count=1):
        members = sorted(self.sorted_sets.get(key, {}).items(), key=lambda m: m[1])[:count]
        for member, _ in members:
            del self.sorted_sets[key][member]
        return members

    async def delete(self, *keys):
        for key in keys:
            self.values.pop(key, None)
            self.sorted_sets.pop(key, None)

    async def aclose(self):
        self.closed = True


class FakePipeline:
    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.commands = []

    def setex(self, *args):
        self.commands.append((self.redis.setex, args))

    def zadd(self, *args):
        self.commands.append((self.redis.zadd, args))

    async def execute(self):
        return [await command(*args) for command, args in self.commands]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_metadata():
    """Factory for ContentMetadata with test defaults."""

    def _make(
        content_id: str,
        project_id: str | None = "project-1",
        content_type: ContentType = ContentType.NOTE,
        title: str | None = None,
        tags: list[str] | None = None,
        language: Language = Language.ENGLISH,
        timestamp: datetime | None = None,
    ) -> ContentMetadata:
        return ContentMetadata(
            content_id=content_id,
            content_type=content_type,
            project_id=project_id,
            timestamp=timestamp or utcnow() - timedelta(hours=1),
            language=language,
            tags=list(tags or []),
            source=SourceInfo(title=title or f"Title {content_id}"),
        )

    return _make


@pytest.fixture
def make_chunks():
    """Factory for consecutive chunks over the given texts."""

    def _make(content_id: str, texts: list[str]) -> list[ContentChunk]:
        chunks = []
        offset = 0
        for position, text in enumerate(texts):
            chunks.append(
                ContentChunk(
                    id=f"{content_id}-{position}",
                    text=text,
                    start_index=offset,
                    end_index=offset + len(text),
                    position=position,
                    total_chunks=len(texts),
                )
            )
            offset += len(text) + 1
        return chunks

    return _make


@pytest_asyncio.fixture
async def embedder(fake_redis):
    provider = EmbeddingProvider(
        backends=[HashingEmbeddingBackend()],
        configuration=EmbeddingConfiguration(model=EmbeddingModel.LOCAL_HASHING_384, retry_count=0),
        cache=EmbeddingCache(fake_redis),
    )
    await provider.load_model(EmbeddingModel.LOCAL_HASHING_384)
    yield provider
    await provider.close()


@pytest.fixture
def vector_store():
    return InMemoryVectorStore(default_index=INDEX_NAME)


@pytest.fixture
def chunker():
    return TextChunker(ChunkOptions(max_size=200, overlap=40, min_chunk_size=0))


@pytest.fixture
def processor(chunker, embedder, vector_store):
    return ContentProcessor(chunker, embedder, vector_store, index_name=INDEX_NAME)


@pytest.fixture
def retriever(embedder, vector_store):
    return Retriever(embedder, vector_store, index_name=INDEX_NAME)


@pytest.fixture
def service(processor, retriever):
    return RAGService(
        processor,
        retriever,
        default_options=SearchOptions(threshold=0.0, enable_reranking=False),
    )
