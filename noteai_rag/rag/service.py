"""RAG service - the subsystem's produced interface.

Composes ingestion, retrieval, context assembly, answer generation and the
per-project knowledge bases. Every operation is async and fails with the
typed errors of ``noteai_rag.core.errors``.
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Protocol

from noteai_rag.agent.providers import LLMProvider
from noteai_rag.agent.runtime import AnswerGenerator, get_answer_generator
from noteai_rag.core.config import get_settings
from noteai_rag.core.errors import RAGError
from noteai_rag.core.rate_limiting import RateLimiter, get_rate_limiter
from noteai_rag.observability.usage_tracker import UsageRecorder, get_usage_tracker
from noteai_rag.rag.context import ContextAssembler
from noteai_rag.rag.models import (
    ContentItem,
    ContentMetadata,
    ContentType,
    Document,
    DocumentMetadata,
    IndexedContent,
    IndexedDocument,
    IndexStatus,
    KnowledgeBase,
    KnowledgeBaseSummary,
    RAGContext,
    RAGResponse,
    RAGResponseMetadata,
    RAGTokenUsage,
    RetrievedChunk,
    SearchFilters,
    SearchOptions,
    SemanticSearchResponse,
    SemanticSearchResult,
    SourceInfo,
)
from noteai_rag.rag.knowledge_base import KnowledgeBaseRegistry
from noteai_rag.rag.processor import ContentProcessor, get_processor
from noteai_rag.rag.retriever import Retriever, get_retriever
from noteai_rag.rag.tokens import estimate_tokens, extract_terms

logger = logging.getLogger(__name__)

SUGGESTION_LIMIT = 5
# Terms shorter than this are not offered as query suggestions
SUGGESTION_MIN_LENGTH = 3


class ContentSource(Protocol):
    """Supplies a project's content items. The subsystem never discovers content on its own."""

    async def list_content(self, project_id: str, content_types: list[ContentType]) -> list[ContentItem]: ...


class RAGService:
    """Facade over the RAG pipeline.

    Knowledge bases are keyed by project id. Retrieval runs against the
    processor's shared index, isolating projects by filter.
    """

    def __init__(
        self,
        processor: ContentProcessor,
        retriever: Retriever,
        assembler: ContextAssembler | None = None,
        answer_generator: AnswerGenerator | None = None,
        usage_tracker: UsageRecorder | None = None,
        rate_limiter: RateLimiter | None = None,
        rate_limit_key: str = "noteai",
        content_source: ContentSource | None = None,
        default_options: SearchOptions | None = None,
    ):
        self.processor = processor
        self.retriever = retriever
        self.assembler = assembler or ContextAssembler()
        self.answer_generator = answer_generator
        self.usage_tracker = usage_tracker
        self.rate_limiter = rate_limiter
        self.rate_limit_key = rate_limit_key
        self.content_source = content_source
        self.default_options = default_options or SearchOptions()
        self.knowledge_bases = KnowledgeBaseRegistry()

    # ----------------------------------------
    # Indexing
    # ----------------------------------------

    async def index_content(self, content_id: str, text: str, metadata: ContentMetadata) -> IndexedContent:
        """Index one content item, replacing any previous version of it."""
        return await self.processor.index_content(content_id, text, metadata)

    async def index_document(self, document: Document, metadata: DocumentMetadata) -> IndexedDocument:
        """Index a document under its own id."""
        content_metadata = ContentMetadata(
            content_id=document.id,
            content_type=ContentType.DOCUMENT,
            project_id=metadata.project_id,
            document_id=document.id,
            timestamp=metadata.modified_at or metadata.created_at,
            language=metadata.language,
            tags=list(metadata.tags),
            source=SourceInfo(
                title=document.title,
                author=metadata.author,
                url=document.url,
                file_path=metadata.file_path,
            ),
        )
        indexed = await self.processor.index_content(document.id, document.content, content_metadata)
        return IndexedDocument(
            document=document,
            metadata=metadata,
            content_id=document.id,
            chunks=indexed.chunks,
            status=indexed.status,
            indexed_at=indexed.indexed_at,
        )

    async def remove_index(self, content_id: str) -> int:
        """Remove every chunk of a content item. Returns the number removed."""
        removed = await self.processor.remove(content_id)
        self.knowledge_bases.discard(content_id)
        logger.info(f"[RAGService] Removed {removed} chunks for '{content_id}'")
        return removed

    async def get_index_status(self, content_id: str) -> IndexStatus | None:
        status = self.processor.get_status(content_id)
        return status.status if status else None

    async def generate_embedding(self, text: str) -> list[float]:
        return await self.processor.embedder.generate_embedding(text)

    # ----------------------------------------
    # Retrieval
    # ----------------------------------------

    async def _retrieve(
        self, query: str, filters: SearchFilters | None, options: SearchOptions
    ) -> list[RetrievedChunk]:
        await self.processor.ensure_index()
        return await self.retriever.retrieve(query, filters, options)

    async def semantic_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        options: SearchOptions | None = None,
    ) -> SemanticSearchResponse:
        """Search and group matching chunks by content item.

        Args:
            query: Search text
            filters: Metadata filters
            options: Retrieval options (defaults to the service defaults)

        Returns:
            One result per content item, best first, with query suggestions
        """
        options = options or self.default_options
        filters = filters or SearchFilters()
        start = time.perf_counter()
        ranked = await self._retrieve(query, filters, options)

        grouped: dict[str, SemanticSearchResult] = {}
        for item in ranked:
            result = grouped.get(item.content_id)
            if result is None:
                grouped[item.content_id] = SemanticSearchResult(
                    id=item.content_id,
                    content=item.text,
                    metadata=item.metadata,
                    similarity_score=item.relevance,
                    chunks=[item.chunk],
                )
            else:
                result.chunks.append(item.chunk)
                result.content = f"{result.content}\n\n{item.text}"
                result.similarity_score = max(result.similarity_score, item.relevance)

        results = sorted(grouped.values(), key=lambda r: (-r.similarity_score, r.id))
        return SemanticSearchResponse(
            query=query,
            results=results,
            total_results=len(results),
            search_time=time.perf_counter() - start,
            used_filters=filters,
            suggestions=self._suggestions(query, ranked),
        )

    @staticmethod
    def _suggestions(query: str, ranked: list[RetrievedChunk]) -> list[str]:
        """Most frequent result terms the query does not already contain."""
        query_terms = set(extract_terms(query))
        counts = Counter(
            term
            for item in ranked
            for term in extract_terms(item.text)
            if len(term) >= SUGGESTION_MIN_LENGTH and term not in query_terms
        )
        return [term for term, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:SUGGESTION_LIMIT]]

    async def search_similar_content(
        self,
        query: str,
        project_id: str | None = None,
        top_k: int = 10,
        threshold: float = 0.7,
    ) -> list[SemanticSearchResult]:
        options = SearchOptions(top_k=top_k, threshold=threshold)
        response = await self.semantic_search(query, SearchFilters.for_project(project_id), options)
        return response.results

    async def get_relevant_context(
        self,
        query: str,
        project_id: str | None = None,
        max_tokens: int | None = None,
        options: SearchOptions | None = None,
    ) -> RAGContext:
        """Retrieve and assemble a token-budgeted context scoped to a project."""
        options = options or self.default_options
        budget = max_tokens if max_tokens is not None else options.max_context_length
        ranked = await self._retrieve(query, SearchFilters.for_project(project_id), options)
        try:
            return self.assembler.assemble(
                ranked,
                budget,
                query=query,
                retrieval_method=options.retrieval_method,
                reranking_used=Retriever.reranks(options),
            )
        except RAGError as e:
            e.with_context(query=query)
            raise

    # ----------------------------------------
    # Answers
    # ----------------------------------------

    async def answer_question(self, question: str, context: RAGContext, provider: LLMProvider) -> RAGResponse:
        """Answer a question from an assembled context.

        Usage is reported before this returns. A cancelled call releases its
        rate-limit reservation and reports nothing.

        Args:
            question: User's question
            context: Context from ``get_relevant_context``
            provider: LLM vendor and model

        Returns:
            RAGResponse with the answer, sources and token usage
        """
        if self.answer_generator is None:
            self.answer_generator = get_answer_generator()

        reservation = None
        if self.rate_limiter is not None:
            reservation = await self.rate_limiter.acquire(
                self.rate_limit_key, estimate_tokens(question) + context.total_tokens
            )

        start = time.perf_counter()
        try:
            answer = await self.answer_generator.generate(question, context, provider)
        except asyncio.CancelledError:
            if reservation is not None:
                await self.rate_limiter.release(reservation)
            raise
        except Exception as e:
            if reservation is not None:
                await self.rate_limiter.release(reservation)
            await self._track_answer(provider, 0, 0, time.perf_counter() - start, 0.0, error=str(e))
            if isinstance(e, RAGError):
                e.with_context(query=question, provider=provider.vendor)
            raise

        elapsed = time.perf_counter() - start
        cost = provider.estimate_cost(answer.prompt_tokens, answer.completion_tokens)
        await self._track_answer(provider, answer.prompt_tokens, answer.completion_tokens, elapsed, cost)

        logger.info(
            f"[RAGService] Answered with {provider.model_name} in {elapsed:.2f}s "
            f"({answer.total_tokens} tokens, {len(context.sources)} sources)"
        )
        return RAGResponse(
            question=question,
            answer=answer.content,
            confidence=context.confidence,
            sources=context.sources,
            context=context,
            response_time=elapsed,
            model=answer.model,
            token_usage=RAGTokenUsage(
                prompt_tokens=answer.prompt_tokens,
                completion_tokens=answer.completion_tokens,
                total_tokens=answer.total_tokens,
                estimated_cost=cost,
            ),
            metadata=RAGResponseMetadata(
                retrieval_method=context.retrieval_method,
                reranking_used=context.reranking_used,
                context_truncated=context.context_truncated,
                additional_sources=context.omitted_sources,
            ),
        )

    async def _track_answer(
        self,
        provider: LLMProvider,
        prompt_tokens: int,
        completion_tokens: int,
        elapsed: float,
        cost: float,
        error: str | None = None,
    ) -> None:
        if self.usage_tracker is None:
            return
        await self.usage_tracker.track(
            provider=provider.vendor,
            model=provider.model_name,
            operation="answer",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=elapsed * 1000,
            success=error is None,
            error=error,
            cost_usd=cost,
        )

    # ----------------------------------------
    # Knowledge bases
    # ----------------------------------------

    async def build_knowledge_base(
        self,
        project_id: str,
        include_transcriptions: bool = True,
        include_documents: bool = True,
    ) -> KnowledgeBase:
        """Index the project's content from the content source, then rebuild its aggregate.

        Without a content source this rebuilds from what is already indexed.
        """
        if self.content_source is not None:
            content_types = []
            if include_transcriptions:
                content_types.append(ContentType.TRANSCRIPTION)
            if include_documents:
                content_types.append(ContentType.DOCUMENT)
            items = await self.content_source.list_content(project_id, content_types) if content_types else []
            for item in items:
                await self.processor.index_content(item.id, item.content, item.metadata)
            logger.info(f"[RAGService] Indexed {len(items)} items for project '{project_id}'")

        return await self.refresh_knowledge_base(project_id)

    async def refresh_knowledge_base(self, project_id: str) -> KnowledgeBase:
        """Rebuild the project's aggregate from the vector store's current contents."""
        await self.processor.ensure_index()
        entries = await self.processor.vector_store.scan(
            filters=SearchFilters.for_project(project_id), index=self.processor.index_name
        )
        return self.knowledge_bases.rebuild(project_id, entries)

    async def update_knowledge_base(self, project_id: str, items: list[ContentItem]) -> KnowledgeBase:
        """Index new content items and fold them into the aggregate without re-scanning.

        A project without a knowledge base gets an empty one first.
        """
        if not self.knowledge_bases.has(project_id):
            self.knowledge_bases.rebuild(project_id, [])
        kb = self.knowledge_bases.get(project_id)
        for item in items:
            indexed = await self.processor.index_content(item.id, item.content, item.metadata)
            kb = self.knowledge_bases.update(project_id, item.metadata, indexed.chunks)
        return kb

    async def get_knowledge_base_summary(self, project_id: str) -> KnowledgeBaseSummary:
        return self.knowledge_bases.summarize(project_id)


# Singleton instance
_rag_service: RAGService | None = None


async def get_rag_service() -> RAGService:
    """Get or create the global RAGService instance."""
    global _rag_service

    if _rag_service is None:
        settings = get_settings()
        _rag_service = RAGService(
            processor=await get_processor(),
            retriever=await get_retriever(),
            usage_tracker=get_usage_tracker(),
            rate_limiter=get_rate_limiter(),
            rate_limit_key=settings.rate_limit_key,
            default_options=SearchOptions.from_settings(settings),
        )

    return _rag_service


def reset_rag_service() -> None:
    """Drop the global service. Its collaborators are shut down by their own factories."""
    global _rag_service
    _rag_service = None
