"""RAG Retriever - ranked chunk retrieval for a query.

Embeds the query, searches the vector store, normalizes scores onto [0, 1],
optionally re-ranks the head of the list by lexical overlap, and caps the
number of chunks taken from any one content item.
"""

import logging
from collections import Counter

from noteai_rag.core.config import get_settings
from noteai_rag.core.errors import RAGError
from noteai_rag.rag.embedder import EmbeddingProvider, get_embedding_provider
from noteai_rag.rag.models import (
    RetrievalMethod,
    RetrievedChunk,
    SearchFilters,
    SearchOptions,
    ranking_key,
)
from noteai_rag.rag.scoring import normalize
from noteai_rag.rag.tokens import term_overlap
from noteai_rag.rag.vector_store import VectorStore, get_vector_store

logger = logging.getLogger(__name__)


class Retriever:
    """Semantic, keyword and hybrid retrieval over one vector index.

    Keyword retrieval never touches the embedding provider. Semantic and hybrid
    retrieval abort on an embedding failure; there is no silent fallback.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_store: VectorStore,
        index_name: str | None = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.index_name = index_name

    @staticmethod
    def reranks(options: SearchOptions) -> bool:
        """Whether ``retrieve`` applies the lexical re-ranking pass for these options."""
        return options.enable_reranking and options.retrieval_method.uses_embeddings

    async def retrieve(
        self,
        query: str,
        filters: SearchFilters | None = None,
        options: SearchOptions | None = None,
    ) -> list[RetrievedChunk]:
        """Retrieve ranked chunks for a query.

        Args:
            query: Search text
            filters: Metadata filters; ``min_similarity`` raises the threshold
            options: Retrieval options (top_k, threshold, method, re-ranking)

        Returns:
            At most ``top_k`` chunks, best first, relevance in [0, 1]
        """
        options = options or SearchOptions()
        if not query.strip():
            return []

        method = options.retrieval_method.canonical
        threshold = filters.effective_threshold(options.threshold) if filters else options.threshold

        try:
            if method is RetrievalMethod.KEYWORD:
                candidates = await self._keyword(query, filters, threshold)
            elif method is RetrievalMethod.HYBRID:
                candidates = await self._hybrid(query, filters, options, threshold)
            else:
                candidates = await self._semantic(query, filters, options, threshold)
        except RAGError as e:
            e.with_context(query=query, retrieval_method=method.value)
            raise

        candidates.sort(key=ranking_key)
        if self.reranks(options):
            candidates = self._rerank(query, candidates, options, threshold)

        results = self._cap_per_source(candidates, options.max_chunks_per_source)[: options.top_k]
        logger.debug(
            f"[Retriever] {method.value} retrieval returned {len(results)} of {len(candidates)} candidates"
        )
        return results

    def _candidate_count(self, options: SearchOptions) -> int:
        # Over-fetch so that the per-source cap can still fill top_k
        count = options.top_k * options.max_chunks_per_source
        if self.reranks(options):
            count = max(count, options.rerank_top_n)
        return count

    async def _semantic(
        self,
        query: str,
        filters: SearchFilters | None,
        options: SearchOptions,
        threshold: float,
    ) -> list[RetrievedChunk]:
        embedding = await self.embedder.generate_embedding(query)
        info = await self.vector_store.get_index_info(self._index())
        results = await self.vector_store.search(
            embedding,
            top_k=self._candidate_count(options),
            threshold=threshold,
            filters=filters,
            index=self.index_name,
        )
        return [
            RetrievedChunk(
                chunk=r.chunk,
                metadata=r.metadata,
                relevance=normalize(r.score, info.metric),
                raw_score=r.score,
            )
            for r in results
        ]

    async def _keyword(
        self,
        query: str,
        filters: SearchFilters | None,
        threshold: float,
    ) -> list[RetrievedChunk]:
        entries = await self.vector_store.scan(filters=filters, index=self.index_name)
        results = []
        for entry in entries:
            score = term_overlap(query, entry.chunk.text)
            if score > 0.0 and score >= threshold:
                results.append(RetrievedChunk(entry.chunk, entry.metadata, score, raw_score=score))
        return results

    async def _hybrid(
        self,
        query: str,
        filters: SearchFilters | None,
        options: SearchOptions,
        threshold: float,
    ) -> list[RetrievedChunk]:
        """Weighted merge of semantic and keyword scores, thresholded on the merged score."""
        semantic = await self._semantic(query, filters, options, threshold=0.0)
        keyword = await self._keyword(query, filters, threshold=0.0)

        weight = options.hybrid_keyword_weight
        merged: dict[str, RetrievedChunk] = {}
        semantic_scores = {c.chunk_id: c.relevance for c in semantic}
        keyword_scores = {c.chunk_id: c.relevance for c in keyword}
        for candidate in semantic + keyword:
            if candidate.chunk_id in merged:
                continue
            score = (1 - weight) * semantic_scores.get(candidate.chunk_id, 0.0) + weight * keyword_scores.get(
                candidate.chunk_id, 0.0
            )
            if score >= threshold:
                merged[candidate.chunk_id] = RetrievedChunk(
                    candidate.chunk, candidate.metadata, score, raw_score=candidate.raw_score
                )
        return list(merged.values())

    def _index(self) -> str:
        return self.index_name or self.vector_store.default_index

    @staticmethod
    def _rerank(
        query: str, ranked: list[RetrievedChunk], options: SearchOptions, threshold: float
    ) -> list[RetrievedChunk]:
        """Re-score the top ``rerank_top_n`` candidates with query term overlap.

        Candidates whose blended score falls below ``threshold`` are dropped.
        """
        head, tail = ranked[: options.rerank_top_n], ranked[options.rerank_top_n :]
        weight = options.rerank_weight
        for item in head:
            item.relevance = (1 - weight) * item.relevance + weight * term_overlap(query, item.text)
        return sorted((c for c in head + tail if c.relevance >= threshold), key=ranking_key)

    @staticmethod
    def _cap_per_source(ranked: list[RetrievedChunk], cap: int) -> list[RetrievedChunk]:
        seen: Counter[str] = Counter()
        kept = []
        for item in ranked:
            if seen[item.content_id] >= cap:
                continue
            seen[item.content_id] += 1
            kept.append(item)
        return kept


# Singleton instance
_retriever: Retriever | None = None


async def get_retriever() -> Retriever:
    """Get or create the global Retriever instance."""
    global _retriever

    if _retriever is None:
        settings = get_settings()
        _retriever = Retriever(
            embedder=await get_embedding_provider(),
            vector_store=get_vector_store(),
            index_name=settings.vector_index_name,
        )

    return _retriever
