"""Health check endpoints for Kubernetes probes."""

from datetime import UTC, datetime

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from noteai_rag.core.config import get_settings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    checks: dict | None = None


# Startup state
_startup_complete = False


def set_startup_complete(complete: bool = True):
    """Mark startup as complete."""
    global _startup_complete
    _startup_complete = complete


async def check_redis() -> tuple[bool, str]:
    """Check Redis connectivity."""
    settings = get_settings()
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True, "healthy"
    except Exception as e:
        return False, f"unhealthy: {e!s}"


async def check_qdrant() -> tuple[bool, str]:
    """Check Qdrant connectivity."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{settings.qdrant_url}/readyz", timeout=5.0)
            if response.status_code == 200:
                return True, "healthy"
            return False, f"unhealthy: status {response.status_code}"
    except Exception as e:
        return False, f"unhealthy: {e!s}"


async def check_langfuse() -> tuple[bool, str]:
    """Check Langfuse connectivity."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{settings.langfuse_host}/api/public/health", timeout=5.0)
            if response.status_code == 200:
                return True, "healthy"
            return False, f"unhealthy: status {response.status_code}"
    except Exception as e:
        return False, f"unhealthy: {e!s}"


def _now() -> str:
    return datetime.now(UTC).isoformat()


@router.get("/health/live", response_model=HealthResponse)
async def liveness():
    """Kubernetes liveness probe.

    Returns 200 if the process is alive.
    """
    return HealthResponse(status="alive", timestamp=_now(), version=get_settings().app_version)


@router.get("/health/ready", response_model=HealthResponse)
async def readiness():
    """Kubernetes readiness probe.

    Checks only the dependencies the current configuration uses: Redis when
    rate limiting is enabled, Qdrant when it backs the vector store.
    """
    settings = get_settings()

    checks = {}
    all_healthy = True

    if settings.rate_limit_enabled:
        redis_ok, checks["redis"] = await check_redis()
        all_healthy = all_healthy and redis_ok

    if settings.vector_store_backend == "qdrant":
        qdrant_ok, checks["qdrant"] = await check_qdrant()
        all_healthy = all_healthy and qdrant_ok

    # Langfuse is non-critical - the service works without it
    if settings.langfuse_enabled:
        _langfuse_ok, checks["langfuse"] = await check_langfuse()

    if not all_healthy:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )

    return HealthResponse(status="ready", timestamp=_now(), version=settings.app_version, checks=checks)


@router.get("/health/startup", response_model=HealthResponse)
async def startup():
    """Kubernetes startup probe.

    Returns 200 once the embedding model is loaded and the service is built.
    """
    if not _startup_complete:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "starting", "message": "Initialization in progress"},
        )

    return HealthResponse(status="started", timestamp=_now(), version=get_settings().app_version)
