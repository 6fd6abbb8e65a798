"""Domain types shared by the RAG pipeline.

Chunks, content metadata, search filters and options, retrieval results,
assembled contexts, answers and knowledge-base aggregates.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from noteai_rag.core.errors import ChunkReferenceError, ConfigurationError


def utcnow() -> datetime:
    return datetime.now(UTC)


# ============================================
# Enumerations
# ============================================


class ContentType(str, Enum):
    TRANSCRIPTION = "transcription"
    DOCUMENT = "document"
    SUMMARY = "summary"
    NOTE = "note"
    WEBPAGE = "webpage"


class Language(str, Enum):
    JAPANESE = "ja"
    ENGLISH = "en"
    CHINESE = "zh"
    KOREAN = "ko"
    AUTO = "auto"


class DistanceMetric(str, Enum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT_PRODUCT = "dot_product"
    MANHATTAN = "manhattan"


class IndexAlgorithm(str, Enum):
    FLAT = "flat"
    HNSW = "hnsw"
    IVF = "ivf"
    PQ = "pq"


class RetrievalMethod(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"
    DENSE = "dense"
    SPARSE = "sparse"

    @property
    def canonical(self) -> "RetrievalMethod":
        """Dense is semantic, sparse is keyword."""
        if self is RetrievalMethod.DENSE:
            return RetrievalMethod.SEMANTIC
        if self is RetrievalMethod.SPARSE:
            return RetrievalMethod.KEYWORD
        return self

    @property
    def uses_embeddings(self) -> bool:
        return self.canonical is not RetrievalMethod.KEYWORD


class IndexStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentType(str, Enum):
    PDF = "pdf"
    WORD = "word"
    TEXT = "text"
    MARKDOWN = "markdown"
    WEBPAGE = "webpage"
    NOTE = "note"


# ============================================
# Content
# ============================================


@dataclass
class TimeRange:
    """Offsets in seconds into an audio recording."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class SourceInfo:
    title: str | None = None
    author: str | None = None
    url: str | None = None
    file_path: str | None = None
    page_number: int | None = None
    duration: float | None = None


@dataclass
class ContentMetadata:
    """Identifies the parent content item of a set of chunks."""

    content_id: str
    content_type: ContentType
    project_id: str | None = None
    recording_id: str | None = None
    document_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    language: Language = Language.AUTO
    tags: list[str] = field(default_factory=list)
    source: SourceInfo = field(default_factory=SourceInfo)

    @property
    def title(self) -> str:
        return self.source.title or "Untitled"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["content_type"] = self.content_type.value
        data["language"] = self.language.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class ContentChunk:
    """A contiguous span of source text.

    ``text == source[start_index:end_index]`` for chunks produced by the chunker.
    """

    id: str
    text: str
    start_index: int
    end_index: int
    position: int
    total_chunks: int
    embedding: list[float] | None = None
    time_range: TimeRange | None = None
    speaker: str | None = None

    def __post_init__(self):
        if self.start_index >= self.end_index:
            raise ChunkReferenceError(
                f"Chunk '{self.id}' has an empty span [{self.start_index}, {self.end_index})"
            )

    @property
    def length(self) -> int:
        return self.end_index - self.start_index


@dataclass
class ContentItem:
    """A content item handed in by the content enumeration collaborator."""

    id: str
    content: str
    metadata: ContentMetadata
    chunks: list[ContentChunk] = field(default_factory=list)
    last_updated: datetime = field(default_factory=utcnow)


@dataclass
class DocumentMetadata:
    project_id: str | None = None
    author: str | None = None
    file_path: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    language: Language = Language.AUTO
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    modified_at: datetime | None = None


@dataclass
class Document:
    id: str
    title: str
    content: str
    type: DocumentType = DocumentType.TEXT
    url: str | None = None


@dataclass
class IndexedContent:
    """Outcome of indexing one content item."""

    content_id: str
    status: IndexStatus
    chunk_count: int = 0
    chunks: list[ContentChunk] = field(default_factory=list)
    indexed_at: datetime | None = None
    processing_time_ms: int = 0
    error: str | None = None


@dataclass
class IndexedDocument:
    document: Document
    metadata: DocumentMetadata
    content_id: str
    chunks: list[ContentChunk]
    status: IndexStatus
    indexed_at: datetime | None = None


# ============================================
# Indexes
# ============================================


@dataclass
class IndexConfiguration:
    """Algorithm parameters. Each algorithm reads only its own fields."""

    ef_construction: int = 200  # HNSW
    m: int = 16  # HNSW links per node
    num_lists: int = 100  # IVF
    num_probes: int = 10  # IVF
    pq_segments: int = 8  # Product quantization compression ratio


@dataclass
class IndexInfo:
    name: str
    dimension: int
    metric: DistanceMetric
    algorithm: IndexAlgorithm
    total_vectors: int
    index_size_bytes: int
    created_at: datetime
    last_optimized: datetime | None = None
    configuration: IndexConfiguration = field(default_factory=IndexConfiguration)


# ============================================
# Search
# ============================================


@dataclass
class SearchFilters:
    """Metadata filters. ``None`` or empty means no constraint on that field."""

    project_ids: list[str] | None = None
    content_types: list[ContentType] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    languages: list[Language] | None = None
    tags: list[str] | None = None  # Matches when any tag is present
    min_similarity: float | None = None

    @classmethod
    def for_project(cls, project_id: str | None) -> "SearchFilters":
        return cls(project_ids=[project_id] if project_id else None)

    def matches(self, metadata: ContentMetadata) -> bool:
        if self.project_ids and metadata.project_id not in self.project_ids:
            return False
        if self.content_types and metadata.content_type not in self.content_types:
            return False
        if self.date_from and metadata.timestamp < self.date_from:
            return False
        if self.date_to and metadata.timestamp > self.date_to:
            return False
        if self.languages and metadata.language not in self.languages:
            return False
        if self.tags and not set(self.tags) & set(metadata.tags):
            return False
        return True

    def effective_threshold(self, threshold: float) -> float:
        if self.min_similarity is None:
            return threshold
        return max(threshold, self.min_similarity)

    def to_dict(self) -> dict:
        """Only the constraints that are set, for reporting."""
        data = {}
        if self.project_ids:
            data["project_ids"] = list(self.project_ids)
        if self.content_types:
            data["content_types"] = [t.value for t in self.content_types]
        if self.date_from:
            data["date_from"] = self.date_from.isoformat()
        if self.date_to:
            data["date_to"] = self.date_to.isoformat()
        if self.languages:
            data["languages"] = [lang.value for lang in self.languages]
        if self.tags:
            data["tags"] = list(self.tags)
        if self.min_similarity is not None:
            data["min_similarity"] = self.min_similarity
        return data


@dataclass
class SearchOptions:
    top_k: int = 10
    threshold: float = 0.7
    enable_reranking: bool = True
    retrieval_method: RetrievalMethod = RetrievalMethod.SEMANTIC
    max_chunks_per_source: int = 3
    rerank_top_n: int = 20
    rerank_weight: float = 0.3
    hybrid_keyword_weight: float = 0.3
    max_context_length: int = 4000

    def __post_init__(self):
        if self.top_k <= 0:
            raise ConfigurationError(f"top_k must be positive, got {self.top_k}")
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigurationError(f"threshold must be within [0, 1], got {self.threshold}")
        if self.max_chunks_per_source <= 0:
            raise ConfigurationError("max_chunks_per_source must be positive")
        if not 0.0 <= self.rerank_weight <= 1.0:
            raise ConfigurationError("rerank_weight must be within [0, 1]")
        if not 0.0 <= self.hybrid_keyword_weight <= 1.0:
            raise ConfigurationError("hybrid_keyword_weight must be within [0, 1]")

    @classmethod
    def from_settings(cls, settings) -> "SearchOptions":
        return cls(
            top_k=settings.retrieval_top_k,
            threshold=settings.retrieval_threshold,
            enable_reranking=settings.retrieval_enable_reranking,
            max_chunks_per_source=settings.retrieval_max_chunks_per_source,
            rerank_top_n=settings.retrieval_rerank_top_n,
            rerank_weight=settings.retrieval_rerank_weight,
            max_context_length=settings.context_max_tokens,
        )


@dataclass
class VectorSearchResult:
    """A stored chunk returned by the vector store with its raw metric score."""

    chunk: ContentChunk
    metadata: ContentMetadata
    score: float

    @property
    def chunk_id(self) -> str:
        return self.chunk.id

    @property
    def content_id(self) -> str:
        return self.metadata.content_id


@dataclass
class RetrievedChunk:
    """A ranked chunk with relevance normalized onto [0, 1]."""

    chunk: ContentChunk
    metadata: ContentMetadata
    relevance: float
    raw_score: float = 0.0

    @property
    def chunk_id(self) -> str:
        return self.chunk.id

    @property
    def content_id(self) -> str:
        return self.metadata.content_id

    @property
    def text(self) -> str:
        return self.chunk.text


def ranking_key(item: RetrievedChunk) -> tuple:
    """Relevance descending, then newest first, then chunk id."""
    return (-item.relevance, -item.metadata.timestamp.timestamp(), item.chunk.id)


@dataclass
class SemanticSearchResult:
    """One content item with the chunks that matched."""

    id: str
    content: str
    metadata: ContentMetadata
    similarity_score: float
    chunks: list[ContentChunk] = field(default_factory=list)


@dataclass
class SemanticSearchResponse:
    query: str
    results: list[SemanticSearchResult]
    total_results: int
    search_time: float  # Seconds
    used_filters: SearchFilters
    suggestions: list[str] = field(default_factory=list)


# ============================================
# Context and Answers
# ============================================


@dataclass
class SourceReference:
    content_id: str
    title: str
    content_type: ContentType
    project_id: str | None
    relevance: float
    chunk_ids: list[str]
    timestamp: datetime


@dataclass
class RAGContext:
    """Query-scoped, token-budgeted context. Never persisted."""

    query: str
    chunks: list[RetrievedChunk]
    total_tokens: int
    sources: list[SourceReference]
    confidence: float
    retrieval_method: RetrievalMethod
    max_tokens: int
    context_truncated: bool = False
    reranking_used: bool = False
    retrieved_count: int = 0
    omitted_sources: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.chunks


@dataclass
class ProjectContext:
    """Coarser, cached context owned by the calling use case."""

    TTL = timedelta(hours=1)

    project_id: str
    rag_context: RAGContext
    participants: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    activity_summary: str = ""
    generated_at: datetime = field(default_factory=utcnow)

    def is_stale(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) - self.generated_at > self.TTL


@dataclass
class RAGTokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float


@dataclass
class RAGResponseMetadata:
    retrieval_method: RetrievalMethod
    reranking_used: bool
    context_truncated: bool
    additional_sources: int
    query_expansions: list[str] = field(default_factory=list)


@dataclass
class RAGResponse:
    question: str
    answer: str
    confidence: float
    sources: list[SourceReference]
    context: RAGContext
    response_time: float  # Seconds
    model: str
    token_usage: RAGTokenUsage
    metadata: RAGResponseMetadata


# ============================================
# Knowledge Base
# ============================================


class RecommendationType(str, Enum):
    OPTIMIZATION = "optimization"
    EXPANSION = "expansion"
    CLEANUP = "cleanup"
    REINDEXING = "reindexing"


class RecommendationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class KnowledgeBase:
    """Per-project aggregate over indexed content."""

    id: str
    project_id: str
    version: str
    total_documents: int = 0
    total_chunks: int = 0
    total_tokens: int = 0
    content_type_distribution: dict[str, int] = field(default_factory=dict)
    language_distribution: dict[str, int] = field(default_factory=dict)
    tag_counts: dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)


@dataclass
class TagFrequency:
    tag: str
    count: int
    percentage: float


@dataclass
class ContentTypeCount:
    content_type: ContentType
    count: int
    percentage: float


@dataclass
class ContentOverview:
    content_id: str
    title: str
    content_type: ContentType
    chunk_count: int
    timestamp: datetime


@dataclass
class KnowledgeBaseRecommendation:
    type: RecommendationType
    title: str
    description: str
    priority: RecommendationPriority
    action: str


@dataclass
class KnowledgeBaseSummary:
    knowledge_base: KnowledgeBase
    recent_content: list[ContentOverview]
    top_tags: list[TagFrequency]
    content_distribution: list[ContentTypeCount]
    recommendations: list[KnowledgeBaseRecommendation]
