"""FastAPI dependency injection.

Provides common dependencies for API routes.
"""

from typing import Annotated

from fastapi import Depends

from noteai_rag.core.config import Settings, get_settings
from noteai_rag.rag.service import RAGService, get_rag_service

# Type aliases for cleaner signatures
Service = Annotated[RAGService, Depends(get_rag_service)]
AppSettings = Annotated[Settings, Depends(get_settings)]
