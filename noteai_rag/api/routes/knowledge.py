"""Indexing, search, context, answer and knowledge base endpoints.

Errors raised by the service propagate as typed RAG errors and are mapped to
status codes by the application's exception handler.
"""

from dataclasses import replace
from datetime import datetime

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from noteai_rag.agent.providers import parse_provider
from noteai_rag.api.deps import Service
from noteai_rag.rag.models import (
    ContentChunk,
    ContentItem,
    ContentMetadata,
    ContentType,
    Document,
    DocumentMetadata,
    DocumentType,
    Language,
    RAGContext,
    RetrievalMethod,
    SearchFilters,
    SearchOptions,
    SourceInfo,
    SourceReference,
    utcnow,
)

router = APIRouter()


# ============================================
# Request/Response Models
# ============================================


class ContentMetadataModel(BaseModel):
    """Metadata supplied with content to index."""

    content_type: ContentType = ContentType.NOTE
    project_id: str | None = None
    recording_id: str | None = None
    title: str | None = None
    author: str | None = None
    url: str | None = None
    language: Language = Language.AUTO
    tags: list[str] = Field(default_factory=list)
    timestamp: datetime | None = None

    def to_metadata(self, content_id: str) -> ContentMetadata:
        return ContentMetadata(
            content_id=content_id,
            content_type=self.content_type,
            project_id=self.project_id,
            recording_id=self.recording_id,
            timestamp=self.timestamp or utcnow(),
            language=self.language,
            tags=list(self.tags),
            source=SourceInfo(title=self.title, author=self.author, url=self.url),
        )


class IndexContentRequest(BaseModel):
    text: str = Field(..., min_length=1)
    metadata: ContentMetadataModel = Field(default_factory=ContentMetadataModel)


class IndexDocumentRequest(BaseModel):
    id: str = Field(..., min_length=1)
    title: str
    content: str = Field(..., min_length=1)
    type: DocumentType = DocumentType.TEXT
    url: str | None = None
    project_id: str | None = None
    author: str | None = None
    file_path: str | None = None
    language: Language = Language.AUTO
    tags: list[str] = Field(default_factory=list)


class ChunkModel(BaseModel):
    id: str
    text: str
    start_index: int
    end_index: int
    position: int
    total_chunks: int

    @classmethod
    def from_chunk(cls, chunk: ContentChunk) -> "ChunkModel":
        return cls(
            id=chunk.id,
            text=chunk.text,
            start_index=chunk.start_index,
            end_index=chunk.end_index,
            position=chunk.position,
            total_chunks=chunk.total_chunks,
        )


class IndexResponse(BaseModel):
    content_id: str
    status: str
    chunk_count: int
    processing_time_ms: int = 0
    indexed_at: datetime | None = None


class StatusResponse(BaseModel):
    content_id: str
    status: str


class RemoveResponse(BaseModel):
    content_id: str
    removed_chunks: int


class FiltersModel(BaseModel):
    project_ids: list[str] | None = None
    content_types: list[ContentType] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    languages: list[Language] | None = None
    tags: list[str] | None = None
    min_similarity: float | None = Field(None, ge=0.0, le=1.0)

    def to_filters(self) -> SearchFilters:
        return SearchFilters(**self.model_dump())


class SearchRequest(BaseModel):
    """Search request; omitted options fall back to the service defaults."""

    query: str = Field(..., min_length=1, max_length=10000)
    filters: FiltersModel | None = None
    top_k: int | None = Field(None, ge=1, le=100)
    threshold: float | None = Field(None, ge=0.0, le=1.0)
    retrieval_method: RetrievalMethod | None = None
    enable_reranking: bool | None = None

    def options(self, defaults: SearchOptions) -> SearchOptions:
        overrides = {
            key: value
            for key, value in (
                ("top_k", self.top_k),
                ("threshold", self.threshold),
                ("retrieval_method", self.retrieval_method),
                ("enable_reranking", self.enable_reranking),
            )
            if value is not None
        }
        return replace(defaults, **overrides)


class SearchResultModel(BaseModel):
    content_id: str
    title: str
    content_type: ContentType
    project_id: str | None
    similarity_score: float
    content: str
    chunks: list[ChunkModel]


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResultModel]
    total_results: int
    search_time: float
    suggestions: list[str]


class ContextRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=10000)
    project_id: str | None = None
    max_tokens: int | None = Field(None, ge=1)
    retrieval_method: RetrievalMethod | None = None


class SourceModel(BaseModel):
    content_id: str
    title: str
    content_type: ContentType
    project_id: str | None
    relevance: float
    chunk_ids: list[str]
    timestamp: datetime

    @classmethod
    def from_source(cls, source: SourceReference) -> "SourceModel":
        return cls(**source.__dict__)


class ContextChunkModel(BaseModel):
    chunk_id: str
    content_id: str
    text: str
    relevance: float


class ContextResponse(BaseModel):
    query: str
    chunks: list[ContextChunkModel]
    total_tokens: int
    max_tokens: int
    sources: list[SourceModel]
    confidence: float
    retrieval_method: RetrievalMethod
    context_truncated: bool
    reranking_used: bool
    omitted_sources: int

    @classmethod
    def from_context(cls, context: RAGContext) -> "ContextResponse":
        return cls(
            query=context.query,
            chunks=[
                ContextChunkModel(
                    chunk_id=c.chunk_id, content_id=c.content_id, text=c.text, relevance=c.relevance
                )
                for c in context.chunks
            ],
            total_tokens=context.total_tokens,
            max_tokens=context.max_tokens,
            sources=[SourceModel.from_source(s) for s in context.sources],
            confidence=context.confidence,
            retrieval_method=context.retrieval_method,
            context_truncated=context.context_truncated,
            reranking_used=context.reranking_used,
            omitted_sources=context.omitted_sources,
        )


class AnswerRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=10000)
    project_id: str | None = None
    provider: str = Field("openai", description="openai, gemini or anthropic")
    model: str | None = None
    max_context_tokens: int | None = Field(None, ge=1)


class TokenUsageModel(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float


class AnswerResponse(BaseModel):
    question: str
    answer: str
    confidence: float
    model: str
    response_time: float
    sources: list[SourceModel]
    token_usage: TokenUsageModel
    retrieval_method: RetrievalMethod
    reranking_used: bool
    context_truncated: bool
    additional_sources: int


class KnowledgeBaseBuildRequest(BaseModel):
    include_transcriptions: bool = True
    include_documents: bool = True


class KnowledgeBaseItemModel(BaseModel):
    id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    metadata: ContentMetadataModel = Field(default_factory=ContentMetadataModel)


class KnowledgeBaseUpdateRequest(BaseModel):
    items: list[KnowledgeBaseItemModel] = Field(..., min_length=1)


class KnowledgeBaseResponse(BaseModel):
    id: str
    project_id: str
    version: str
    total_documents: int
    total_chunks: int
    total_tokens: int
    content_type_distribution: dict[str, int]
    language_distribution: dict[str, int]
    tag_counts: dict[str, int]
    created_at: datetime
    last_updated: datetime


class RecommendationModel(BaseModel):
    type: str
    title: str
    description: str
    priority: str
    action: str


class KnowledgeBaseSummaryResponse(BaseModel):
    knowledge_base: KnowledgeBaseResponse
    recent_content: list[dict]
    top_tags: list[dict]
    content_distribution: list[dict]
    recommendations: list[RecommendationModel]


# ============================================
# Indexing Endpoints
# ============================================


@router.put("/content/{content_id}", response_model=IndexResponse)
async def index_content(content_id: str, request: IndexContentRequest, service: Service):
    """Index (or re-index) one content item."""
    indexed = await service.index_content(content_id, request.text, request.metadata.to_metadata(content_id))
    return IndexResponse(
        content_id=indexed.content_id,
        status=indexed.status.value,
        chunk_count=indexed.chunk_count,
        processing_time_ms=indexed.processing_time_ms,
        indexed_at=indexed.indexed_at,
    )


@router.post("/documents", response_model=IndexResponse, status_code=status.HTTP_201_CREATED)
async def index_document(request: IndexDocumentRequest, service: Service):
    """Index a document."""
    document = Document(
        id=request.id, title=request.title, content=request.content, type=request.type, url=request.url
    )
    metadata = DocumentMetadata(
        project_id=request.project_id,
        author=request.author,
        file_path=request.file_path,
        language=request.language,
        tags=list(request.tags),
    )
    indexed = await service.index_document(document, metadata)
    return IndexResponse(
        content_id=indexed.content_id,
        status=indexed.status.value,
        chunk_count=len(indexed.chunks),
        indexed_at=indexed.indexed_at,
    )


@router.delete("/content/{content_id}", response_model=RemoveResponse)
async def remove_content(content_id: str, service: Service):
    """Remove every chunk of a content item."""
    removed = await service.remove_index(content_id)
    return RemoveResponse(content_id=content_id, removed_chunks=removed)


@router.get("/content/{content_id}/status", response_model=StatusResponse)
async def get_index_status(content_id: str, service: Service):
    """Indexing status of a content item."""
    index_status = await service.get_index_status(content_id)
    if index_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No indexing recorded for content")
    return StatusResponse(content_id=content_id, status=index_status.value)


# ============================================
# Retrieval Endpoints
# ============================================


@router.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest, service: Service):
    """Semantic search grouped by content item."""
    filters = request.filters.to_filters() if request.filters else None
    response = await service.semantic_search(request.query, filters, request.options(service.default_options))
    return SearchResponse(
        query=response.query,
        results=[
            SearchResultModel(
                content_id=r.id,
                title=r.metadata.title,
                content_type=r.metadata.content_type,
                project_id=r.metadata.project_id,
                similarity_score=r.similarity_score,
                content=r.content,
                chunks=[ChunkModel.from_chunk(c) for c in r.chunks],
            )
            for r in response.results
        ],
        total_results=response.total_results,
        search_time=response.search_time,
        suggestions=response.suggestions,
    )


@router.post("/context", response_model=ContextResponse)
async def get_context(request: ContextRequest, service: Service):
    """Token-budgeted context for a query, scoped to a project."""
    options = service.default_options
    if request.retrieval_method is not None:
        options = replace(options, retrieval_method=request.retrieval_method)
    context = await service.get_relevant_context(request.query, request.project_id, request.max_tokens, options)
    return ContextResponse.from_context(context)


@router.post("/answer", response_model=AnswerResponse)
async def answer(request: AnswerRequest, service: Service):
    """Retrieve context for a question and answer it with the chosen provider."""
    provider = parse_provider(request.provider, request.model)
    context = await service.get_relevant_context(request.question, request.project_id, request.max_context_tokens)
    response = await service.answer_question(request.question, context, provider)
    return AnswerResponse(
        question=response.question,
        answer=response.answer,
        confidence=response.confidence,
        model=response.model,
        response_time=response.response_time,
        sources=[SourceModel.from_source(s) for s in response.sources],
        token_usage=TokenUsageModel(**response.token_usage.__dict__),
        retrieval_method=response.metadata.retrieval_method,
        reranking_used=response.metadata.reranking_used,
        context_truncated=response.metadata.context_truncated,
        additional_sources=response.metadata.additional_sources,
    )


# ============================================
# Knowledge Base Endpoints
# ============================================


@router.post("/projects/{project_id}/knowledge-base", response_model=KnowledgeBaseResponse)
async def build_knowledge_base(project_id: str, request: KnowledgeBaseBuildRequest, service: Service):
    """Build (or fully rebuild) a project's knowledge base."""
    kb = await service.build_knowledge_base(
        project_id, request.include_transcriptions, request.include_documents
    )
    return KnowledgeBaseResponse(**kb.__dict__)


@router.post("/projects/{project_id}/knowledge-base/refresh", response_model=KnowledgeBaseResponse)
async def refresh_knowledge_base(project_id: str, service: Service):
    """Rebuild a project's knowledge base from indexed content only."""
    kb = await service.refresh_knowledge_base(project_id)
    return KnowledgeBaseResponse(**kb.__dict__)


@router.patch("/projects/{project_id}/knowledge-base", response_model=KnowledgeBaseResponse)
async def update_knowledge_base(project_id: str, request: KnowledgeBaseUpdateRequest, service: Service):
    """Index new content and fold it into the project's knowledge base."""
    items = []
    for item in request.items:
        metadata = item.metadata.model_copy(update={"project_id": project_id}).to_metadata(item.id)
        items.append(ContentItem(id=item.id, content=item.content, metadata=metadata))
    kb = await service.update_knowledge_base(project_id, items)
    return KnowledgeBaseResponse(**kb.__dict__)


@router.get("/projects/{project_id}/knowledge-base/summary", response_model=KnowledgeBaseSummaryResponse)
async def get_knowledge_base_summary(project_id: str, service: Service):
    """Aggregate counts, recent content, top tags and recommendations."""
    summary = await service.get_knowledge_base_summary(project_id)
    return KnowledgeBaseSummaryResponse(
        knowledge_base=KnowledgeBaseResponse(**summary.knowledge_base.__dict__),
        recent_content=[
            {
                "content_id": c.content_id,
                "title": c.title,
                "content_type": c.content_type.value,
                "chunk_count": c.chunk_count,
                "timestamp": c.timestamp.isoformat(),
            }
            for c in summary.recent_content
        ],
        top_tags=[{"tag": t.tag, "count": t.count, "percentage": t.percentage} for t in summary.top_tags],
        content_distribution=[
            {"content_type": d.content_type.value, "count": d.count, "percentage": d.percentage}
            for d in summary.content_distribution
        ],
        recommendations=[
            RecommendationModel(
                type=r.type.value,
                title=r.title,
                description=r.description,
                priority=r.priority.value,
                action=r.action,
            )
            for r in summary.recommendations
        ],
    )
