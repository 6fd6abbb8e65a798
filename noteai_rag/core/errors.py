"""Typed error taxonomy for the RAG subsystem.

Lower-level components raise the narrow classes below. The retriever and the
service attach query or content context through ``with_context`` and re-raise
the same instance, so callers can always branch on the concrete class.
"""

from typing import Any


class RAGError(Exception):
    """Base class for every error raised by this package."""

    retryable = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: dict[str, Any] = dict(context)
        super().__init__(message)

    def with_context(self, **context: Any) -> "RAGError":
        """Attach caller context without changing the error's class."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


# ============================================
# Configuration
# ============================================


class ConfigurationError(RAGError):
    """Invalid parameters or setup. Never retried."""


class InvalidInputError(ConfigurationError):
    """Input rejected before any work was attempted (empty text, bad batch size)."""


class IndexAlreadyExistsError(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Index '{name}' already exists", index=name)
        self.name = name


class UnsupportedAlgorithmError(ConfigurationError):
    def __init__(self, algorithm: str, backend: str):
        super().__init__(
            f"Index algorithm '{algorithm}' is not supported by the {backend} store",
            algorithm=algorithm,
            backend=backend,
        )
        self.algorithm = algorithm


class ModelNotLoadedError(ConfigurationError):
    """An embedding was requested but no instance of the model is loaded."""

    def __init__(self, model: str | None = None):
        target = f"'{model}'" if model else "any model"
        super().__init__(f"No loaded instance for {target}; call load_model first")
        self.model = model


class ModelNotAvailableError(ConfigurationError):
    def __init__(self, model: str, reason: str = "not in the model catalog"):
        super().__init__(f"Embedding model '{model}' is not available: {reason}", model=model)
        self.model = model


# ============================================
# Not Found
# ============================================


class NotFoundError(RAGError):
    """A named resource does not exist."""


class IndexNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"Index '{name}' not found", index=name)
        self.name = name


class ContentNotFoundError(NotFoundError):
    def __init__(self, content_id: str, index: str | None = None):
        super().__init__(f"Content '{content_id}' is not indexed", content_id=content_id)
        if index:
            self.context["index"] = index
        self.content_id = content_id


class KnowledgeBaseNotFoundError(NotFoundError):
    def __init__(self, key: str):
        super().__init__(f"Knowledge base '{key}' not found", knowledge_base=key)
        self.key = key


# ============================================
# Transient
# ============================================


class TransientProviderError(RAGError):
    """A remote call failed in a way that may succeed on retry."""

    retryable = True


class ProviderTimeoutError(TransientProviderError):
    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout}s", timeout=timeout)
        self.timeout = timeout


class ProviderUnavailableError(RAGError):
    """Retries are exhausted. The last underlying failure is chained as ``__cause__``."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None = None):
        reason = f": {last_error}" if last_error else ""
        super().__init__(
            f"Remote provider unavailable for {operation} after {attempts} attempt(s){reason}",
            attempts=attempts,
        )
        self.attempts = attempts
        self.last_error = last_error


# ============================================
# Quota
# ============================================


class QuotaError(RAGError):
    """Token or rate limits. Never retried automatically."""


class TokenLimitExceededError(QuotaError):
    def __init__(self, model: str, tokens: int, limit: int):
        super().__init__(
            f"Input of {tokens} tokens exceeds the {limit}-token limit of '{model}'; re-chunk the input",
            model=model,
        )
        self.model = model
        self.tokens = tokens
        self.limit = limit


class RateLimitExceeded(QuotaError):
    """Raised when rate limit is exceeded."""

    def __init__(self, limit_type: str, limit: int, remaining: int, retry_after: int):
        self.limit_type = limit_type
        self.limit = limit
        self.remaining = remaining
        self.retry_after = retry_after
        super().__init__(f"{limit_type} rate limit exceeded. Retry after {retry_after}s")


# ============================================
# Data Integrity
# ============================================


class DataIntegrityError(RAGError):
    """Stored or supplied data violates an invariant. No silent repair."""


class DimensionMismatchError(DataIntegrityError):
    def __init__(self, expected: int, actual: int, index: str | None = None):
        super().__init__(
            f"Vector dimension {actual} does not match index dimension {expected}",
            expected=expected,
            actual=actual,
        )
        if index:
            self.context["index"] = index
        self.expected = expected
        self.actual = actual


class ChunkReferenceError(DataIntegrityError):
    """Chunks or embeddings do not line up with their parent content item."""


__all__ = [
    "ChunkReferenceError",
    "ConfigurationError",
    "ContentNotFoundError",
    "DataIntegrityError",
    "DimensionMismatchError",
    "IndexAlreadyExistsError",
    "IndexNotFoundError",
    "InvalidInputError",
    "KnowledgeBaseNotFoundError",
    "ModelNotAvailableError",
    "ModelNotLoadedError",
    "NotFoundError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "QuotaError",
    "RAGError",
    "RateLimitExceeded",
    "TokenLimitExceededError",
    "TransientProviderError",
    "UnsupportedAlgorithmError",
]
