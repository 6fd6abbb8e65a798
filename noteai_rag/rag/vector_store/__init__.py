"""Vector store adapters and the configured singleton."""

import logging

from qdrant_client import AsyncQdrantClient

from noteai_rag.core.config import get_settings
from noteai_rag.rag.vector_store.base import (
    MemoryUsage,
    ReadWriteLock,
    SearchPerformance,
    StorageStats,
    VectorStore,
    VectorStoreItem,
)
from noteai_rag.rag.vector_store.memory import InMemoryVectorStore
from noteai_rag.rag.vector_store.qdrant import QdrantVectorStore

logger = logging.getLogger(__name__)

__all__ = [
    "InMemoryVectorStore",
    "MemoryUsage",
    "QdrantVectorStore",
    "ReadWriteLock",
    "SearchPerformance",
    "StorageStats",
    "VectorStore",
    "VectorStoreItem",
    "get_vector_store",
    "shutdown_vector_store",
]

# Singleton instance
_vector_store: VectorStore | None = None


def get_vector_store() -> VectorStore:
    """Get or create the global VectorStore for the configured backend."""
    global _vector_store

    if _vector_store is None:
        settings = get_settings()
        if settings.vector_store_backend == "qdrant":
            # Default 5s is too short for batched upserts
            client = AsyncQdrantClient(
                url=settings.qdrant_url,
                api_key=settings.qdrant_api_key,
                timeout=settings.qdrant_timeout,
            )
            _vector_store = QdrantVectorStore(client, default_index=settings.vector_index_name)
        else:
            _vector_store = InMemoryVectorStore(
                default_index=settings.vector_index_name,
                search_cache_size=settings.vector_search_cache_size,
            )
        logger.info(f"Initialized {_vector_store.backend_name} vector store")

    return _vector_store


async def shutdown_vector_store() -> None:
    global _vector_store
    if _vector_store is not None:
        await _vector_store.close()
        _vector_store = None
