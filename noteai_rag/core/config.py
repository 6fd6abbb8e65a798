"""Application configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file).
Components never read settings at call time; the ``get_*`` factories read them
once and hand explicit configuration objects to the components they build.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ============================================
    # Application
    # ============================================
    app_name: str = "NoteAI RAG"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_prefix: str = "/api/v1"

    # ============================================
    # Redis
    # ============================================
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_auth: str = ""

    @property
    def redis_url(self) -> str:
        """Construct Redis URL with optional auth."""
        if self.redis_auth:
            return f"redis://:{self.redis_auth}@{self.redis_host}:{self.redis_port}/0"
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    # ============================================
    # Rate Limiting
    # ============================================
    rate_limit_enabled: bool = False
    rate_limit_tpm: int = 100000  # Tokens per minute
    rate_limit_rpm: int = 60  # Requests per minute
    rate_limit_key: str = "noteai"  # Bucket shared by remote embedding and answer calls

    # ============================================
    # Vector Store
    # ============================================
    vector_store_backend: Literal["memory", "qdrant"] = "memory"
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    qdrant_timeout: int = 60
    vector_index_name: str = "noteai_content"
    vector_index_metric: str = "cosine"
    vector_index_algorithm: str = "flat"
    vector_search_cache_size: int = 256

    # ============================================
    # Embeddings
    # ============================================
    embedding_model: str = Field(
        default="local-hashing-768", description="Embedding model identifier from the catalog"
    )
    embedding_max_tokens: int = 8192
    embedding_batch_size: int = 10
    embedding_timeout: float = 30.0
    embedding_retry_count: int = 3
    embedding_retry_backoff: float = 0.5  # Base delay, doubled per attempt
    embedding_cache_enabled: bool = True
    embedding_cache_ttl: int = 3600
    embedding_cache_max_entries: int = 10000

    # Preprocessing (applied identically to indexed text and queries)
    embedding_normalize_whitespace: bool = True
    embedding_lowercase: bool = False
    embedding_remove_special_characters: bool = False
    embedding_remove_stop_words: bool = False
    embedding_max_length: int | None = None
    embedding_min_length: int = 1

    # ============================================
    # Remote Providers
    # ============================================
    openai_api_key: str = ""
    openai_base_url: str | None = None
    azure_openai_endpoint: str = ""
    azure_openai_api_key: str = ""
    azure_openai_api_version: str = "2025-04-01-preview"
    anthropic_api_key: str = ""
    gemini_api_key: str = ""

    # ============================================
    # Chunking
    # ============================================
    chunk_size: int = 1000
    chunk_overlap: int = 200
    chunk_min_size: int = 100
    chunk_preserve_sentences: bool = True
    chunk_preserve_paragraphs: bool = True
    chunk_split_on_headers: bool = False
    chunk_offload_threshold: int = 50000  # Characters; larger inputs chunk in a worker thread

    # ============================================
    # Retrieval
    # ============================================
    retrieval_top_k: int = 20
    retrieval_threshold: float = 0.6
    retrieval_enable_reranking: bool = True
    retrieval_rerank_top_n: int = 20
    retrieval_rerank_weight: float = 0.3
    retrieval_max_chunks_per_source: int = 3
    context_max_tokens: int = 4000

    # ============================================
    # Answer Generation
    # ============================================
    answer_timeout: float = 60.0
    answer_retry_count: int = 2
    answer_max_tokens: int = 1024
    answer_temperature: float = 0.2
    answer_grounded_only: bool = True

    # ============================================
    # Langfuse (v3 Observability)
    # ============================================
    langfuse_host: str = "http://localhost:3000"
    langfuse_public_key: str = ""
    langfuse_secret_key: str = ""

    # ============================================
    # Logging
    # ============================================
    log_level: str = "INFO"
    log_format: str = "console"  # "json" or "console"

    @field_validator("vector_index_metric", "vector_index_algorithm", mode="before")
    @classmethod
    def normalize_enum_names(cls, v: str) -> str:
        """Accept enum names in any case (COSINE, Cosine, cosine)."""
        return str(v).strip().lower()

    @property
    def langfuse_enabled(self) -> bool:
        return bool(self.langfuse_public_key and self.langfuse_secret_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
