"""Content processor for RAG ingestion.

Handles chunking, embedding, and storage of one content item, and tracks the
item's indexing status (pending -> processing -> completed | failed).
"""

import asyncio
import logging
import time

from noteai_rag.core.config import get_settings
from noteai_rag.core.errors import IndexAlreadyExistsError, InvalidInputError, RAGError
from noteai_rag.rag.chunking import TextChunker, get_chunker
from noteai_rag.rag.embedder import EmbeddingProvider, get_embedding_provider
from noteai_rag.rag.models import (
    ContentMetadata,
    DistanceMetric,
    IndexAlgorithm,
    IndexedContent,
    IndexInfo,
    IndexStatus,
    utcnow,
)
from noteai_rag.rag.vector_store import VectorStore, get_vector_store

logger = logging.getLogger(__name__)


class ContentProcessor:
    """Processes content items for RAG ingestion.

    Pipeline:
    1. Split into chunks (in a worker thread for large inputs)
    2. Generate embeddings
    3. Replace the item's entries in the vector index in one store call

    A failure in any stage leaves the index as it was before the call, since
    nothing is written until the final store.
    """

    def __init__(
        self,
        chunker: TextChunker,
        embedder: EmbeddingProvider,
        vector_store: VectorStore,
        index_name: str,
        index_metric: DistanceMetric = DistanceMetric.COSINE,
        index_algorithm: IndexAlgorithm = IndexAlgorithm.FLAT,
        offload_threshold: int = 50000,
    ):
        self.chunker = chunker
        self.embedder = embedder
        self.vector_store = vector_store
        self.index_name = index_name
        self.index_metric = index_metric
        self.index_algorithm = index_algorithm
        self.offload_threshold = offload_threshold
        self._statuses: dict[str, IndexedContent] = {}
        self._index_lock = asyncio.Lock()

    async def ensure_index(self) -> IndexInfo:
        """Create the shared index with the active model's dimension if it is missing."""
        async with self._index_lock:
            if await self.vector_store.has_index(self.index_name):
                return await self.vector_store.get_index_info(self.index_name)
            dimension = self.embedder.get_model_info().dimension
            try:
                return await self.vector_store.create_index(
                    self.index_name, dimension, self.index_metric, self.index_algorithm
                )
            except IndexAlreadyExistsError:
                # Created by another process between the check and the create
                return await self.vector_store.get_index_info(self.index_name)

    async def index_content(self, content_id: str, text: str, metadata: ContentMetadata) -> IndexedContent:
        """Chunk, embed and store one content item.

        Args:
            content_id: Parent content id
            text: Content text
            metadata: Content metadata (``metadata.content_id`` must equal ``content_id``)

        Returns:
            IndexedContent with status Completed

        Raises:
            RAGError: The stage's own error, with ``content_id`` context attached.
                The item's status is Failed.
        """
        status = IndexedContent(content_id=content_id, status=IndexStatus.PENDING)
        self._statuses[content_id] = status
        start = time.perf_counter()
        logger.info(f"[Processor] Starting content processing: content_id={content_id}, chars={len(text)}")

        try:
            status.status = IndexStatus.PROCESSING
            await self.ensure_index()

            chunks = await self._chunk(text, content_id)
            if not chunks:
                raise InvalidInputError("No chunks generated from content", content_id=content_id)
            logger.info(f"[Processor] Generated {len(chunks)} chunks")

            embeddings = await self.embedder.generate_embeddings([c.text for c in chunks])
            stored = await self.vector_store.store(
                content_id, embeddings, metadata, chunks, index=self.index_name
            )
        except asyncio.CancelledError:
            status.status = IndexStatus.FAILED
            status.error = "cancelled"
            status.processing_time_ms = int((time.perf_counter() - start) * 1000)
            raise
        except Exception as e:
            status.status = IndexStatus.FAILED
            status.error = str(e)
            status.processing_time_ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"[Processor] Content processing failed for {content_id}: {e}", exc_info=True)
            if isinstance(e, RAGError):
                e.with_context(content_id=content_id)
            raise

        status.status = IndexStatus.COMPLETED
        status.chunk_count = stored
        status.chunks = chunks
        status.indexed_at = utcnow()
        status.processing_time_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"[Processor] Content processed successfully in {status.processing_time_ms}ms: {stored} chunks"
        )
        return status

    async def _chunk(self, text: str, content_id: str):
        if len(text) > self.offload_threshold:
            # Keep the event loop responsive for large inputs
            return await asyncio.to_thread(self.chunker.chunk, text, content_id=content_id)
        return self.chunker.chunk(text, content_id=content_id)

    async def remove(self, content_id: str) -> int:
        """Delete every chunk of a content item.

        Returns:
            Number of chunks deleted
        """
        try:
            removed = await self.vector_store.remove(content_id, index=self.index_name)
        except RAGError as e:
            e.with_context(content_id=content_id)
            raise
        self._statuses.pop(content_id, None)
        return removed

    def get_status(self, content_id: str) -> IndexedContent | None:
        return self._statuses.get(content_id)


# Singleton instance
_processor: ContentProcessor | None = None


async def get_processor() -> ContentProcessor:
    """Get or create the global ContentProcessor instance."""
    global _processor

    if _processor is None:
        settings = get_settings()
        _processor = ContentProcessor(
            chunker=get_chunker(),
            embedder=await get_embedding_provider(),
            vector_store=get_vector_store(),
            index_name=settings.vector_index_name,
            index_metric=DistanceMetric(settings.vector_index_metric),
            index_algorithm=IndexAlgorithm(settings.vector_index_algorithm),
            offload_threshold=settings.chunk_offload_threshold,
        )

    return _processor
