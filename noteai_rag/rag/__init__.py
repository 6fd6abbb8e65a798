"""RAG (Retrieval-Augmented Generation) package.

Components:
- TextChunker: Boundary-aware sliding-window chunking
- EmbeddingProvider: Model lifecycle, batching, caching and retries
- VectorStore: In-memory (flat, IVF) and Qdrant (flat, HNSW, PQ) indexes
- Retriever: Semantic, keyword and hybrid retrieval with re-ranking
- ContextAssembler: Token-budgeted context assembly
- ContentProcessor: Ingestion pipeline with status tracking
- RAGService: Facade exposing indexing, search, context, answers and knowledge bases
"""

from noteai_rag.rag.chunking import ChunkOptions, TextChunker, get_chunker
from noteai_rag.rag.context import ContextAssembler
from noteai_rag.rag.embedder import (
    EmbeddingConfiguration,
    EmbeddingModel,
    EmbeddingProvider,
    get_embedding_provider,
)
from noteai_rag.rag.knowledge_base import KnowledgeBaseRegistry
from noteai_rag.rag.processor import ContentProcessor, get_processor
from noteai_rag.rag.retriever import Retriever, get_retriever
from noteai_rag.rag.service import ContentSource, RAGService, get_rag_service
from noteai_rag.rag.vector_store import (
    InMemoryVectorStore,
    QdrantVectorStore,
    VectorStore,
    get_vector_store,
)

__all__ = [
    "ChunkOptions",
    "ContentProcessor",
    "ContentSource",
    "ContextAssembler",
    "EmbeddingConfiguration",
    "EmbeddingModel",
    "EmbeddingProvider",
    "InMemoryVectorStore",
    "KnowledgeBaseRegistry",
    "QdrantVectorStore",
    "RAGService",
    "Retriever",
    "TextChunker",
    "VectorStore",
    "get_chunker",
    "get_embedding_provider",
    "get_processor",
    "get_rag_service",
    "get_retriever",
    "get_vector_store",
]
