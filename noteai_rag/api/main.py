"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from noteai_rag.agent.runtime import shutdown_answer_generator
from noteai_rag.api.routes import health, knowledge
from noteai_rag.core.config import get_settings
from noteai_rag.core.errors import (
    ConfigurationError,
    DataIntegrityError,
    NotFoundError,
    ProviderUnavailableError,
    QuotaError,
    RAGError,
    RateLimitExceeded,
    TransientProviderError,
)
from noteai_rag.core.logging import configure_logging
from noteai_rag.observability.usage_tracker import shutdown_usage_tracker
from noteai_rag.rag.embedder import shutdown_embedding_provider
from noteai_rag.rag.service import get_rag_service, reset_rag_service
from noteai_rag.rag.vector_store import shutdown_vector_store

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    configure_logging(settings)
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    # Loads the embedding model and wires the service graph
    await get_rag_service()

    health.set_startup_complete()
    logger.info("Startup complete - ready to accept requests")

    yield

    logger.info("Shutting down...")
    health.set_startup_complete(False)
    reset_rag_service()
    await shutdown_answer_generator()
    await shutdown_embedding_provider()
    await shutdown_vector_store()
    shutdown_usage_tracker()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="NoteAI retrieval-augmented generation API",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)


def status_for(error: RAGError) -> int:
    """HTTP status code for a RAG error category."""
    if isinstance(error, ConfigurationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, DataIntegrityError):
        return 409
    if isinstance(error, QuotaError):
        return 429
    if isinstance(error, TransientProviderError | ProviderUnavailableError):
        return 503
    return 500


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message} {exc.context}")
    else:
        logger.info(f"[API] {request.method} {request.url.path} rejected ({status_code}): {exc.message}")

    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "context": {key: str(value) for key, value in exc.context.items()},
        },
        headers=headers,
    )


# Health check routes
app.include_router(health.router, tags=["Health"])

# API routes
app.include_router(knowledge.router, prefix=settings.api_prefix, tags=["Knowledge"])

# Prometheus metrics endpoint
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs" if settings.debug else None,
        "health": "/health/ready",
    }


def run():
    """Run the API server."""
    import uvicorn

    uvicorn.run(
        "noteai_rag.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
