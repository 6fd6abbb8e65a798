"""Token-budgeted context assembly."""

import logging
from dataclasses import replace

from noteai_rag.core.errors import ConfigurationError
from noteai_rag.rag.models import (
    RAGContext,
    RetrievalMethod,
    RetrievedChunk,
    SourceReference,
)
from noteai_rag.rag.tokens import estimate_tokens, truncate_to_tokens

logger = logging.getLogger(__name__)


class ContextAssembler:
    """Greedy assembly of ranked chunks under a token budget.

    Chunks are accepted in rank order until the next one would overflow the
    budget; assembly stops there and never splits a chunk. The only exception
    is a top chunk that alone exceeds the budget, which is truncated at a
    sentence boundary and flagged.
    """

    def assemble(
        self,
        ranked: list[RetrievedChunk],
        max_tokens: int,
        query: str = "",
        retrieval_method: RetrievalMethod = RetrievalMethod.SEMANTIC,
        reranking_used: bool = False,
    ) -> RAGContext:
        if max_tokens <= 0:
            raise ConfigurationError(f"max_tokens must be positive, got {max_tokens}")

        included: list[RetrievedChunk] = []
        total = 0
        truncated = False

        for item in ranked:
            tokens = estimate_tokens(item.text)
            if total + tokens <= max_tokens:
                included.append(item)
                total += tokens
                continue
            if not included:
                text = truncate_to_tokens(item.text, max_tokens)
                if text:
                    included.append(self._truncated(item, text))
                    total = estimate_tokens(text)
                    truncated = True
            break

        sources = self._sources(included)
        retrieved_sources = {item.content_id for item in ranked}
        context = RAGContext(
            query=query,
            chunks=included,
            total_tokens=total,
            sources=sources,
            confidence=self._confidence(included, len(ranked)),
            retrieval_method=retrieval_method,
            max_tokens=max_tokens,
            context_truncated=truncated,
            reranking_used=reranking_used,
            retrieved_count=len(ranked),
            omitted_sources=len(retrieved_sources - {s.content_id for s in sources}),
        )
        logger.debug(
            f"[ContextAssembler] Included {len(included)}/{len(ranked)} chunks, {total}/{max_tokens} tokens"
            + (" (truncated)" if truncated else "")
        )
        return context

    @staticmethod
    def _truncated(item: RetrievedChunk, text: str) -> RetrievedChunk:
        # Text is a prefix of the original, so start_index is unchanged
        chunk = replace(item.chunk, text=text, end_index=item.chunk.start_index + len(text))
        return replace(item, chunk=chunk)

    @staticmethod
    def _sources(included: list[RetrievedChunk]) -> list[SourceReference]:
        """One reference per content item, ordered by first appearance."""
        sources: dict[str, SourceReference] = {}
        for item in included:
            source = sources.get(item.content_id)
            if source is None:
                sources[item.content_id] = SourceReference(
                    content_id=item.content_id,
                    title=item.metadata.title,
                    content_type=item.metadata.content_type,
                    project_id=item.metadata.project_id,
                    relevance=item.relevance,
                    chunk_ids=[item.chunk_id],
                    timestamp=item.metadata.timestamp,
                )
            else:
                source.relevance = max(source.relevance, item.relevance)
                source.chunk_ids.append(item.chunk_id)
        return list(sources.values())

    @staticmethod
    def _confidence(included: list[RetrievedChunk], retrieved: int) -> float:
        """Average relevance of included chunks times the share of retrieved chunks included."""
        if not included or retrieved == 0:
            return 0.0
        average = sum(item.relevance for item in included) / len(included)
        coverage = len(included) / retrieved
        return min(max(average * coverage, 0.0), 1.0)
