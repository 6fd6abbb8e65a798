"""Rate limiting package.

Remote embedding and answer-generation calls reserve capacity before they are
sent. A reservation is released when the call is cancelled before completing,
so cancelled work is never charged against the window.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import redis.asyncio as redis

from noteai_rag.core.config import get_settings
from noteai_rag.core.errors import RateLimitExceeded
from noteai_rag.core.rate_limiting.token_limiter import (
    RequestRateLimiter,
    TokenRateLimiter,
)


@dataclass
class RateLimitReservation:
    """Capacity held for one remote call."""

    key: str
    tokens: int
    token_window: str | None = None
    request_window: str | None = None


class RateLimiter(Protocol):
    """Contract consulted before each remote call."""

    async def acquire(self, key: str, tokens: int) -> RateLimitReservation:
        """Reserve capacity or raise RateLimitExceeded."""
        ...

    async def release(self, reservation: RateLimitReservation) -> None:
        """Return capacity for a call that never completed."""
        ...


class CombinedRateLimiter:
    """Combined TPM and RPM rate limiter.

    Wraps TokenRateLimiter and RequestRateLimiter behind the reservation API.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_tpm: int = 100000,
        default_rpm: int = 60,
    ):
        self.token_limiter = TokenRateLimiter(redis_client, default_tpm)
        self.request_limiter = RequestRateLimiter(redis_client, default_rpm)

    async def acquire(self, key: str, tokens: int) -> RateLimitReservation:
        """Count one request and consume ``tokens``. Raises RateLimitExceeded if denied."""
        allowed, _remaining, limit, request_window = await self.request_limiter.check_and_increment(
            key
        )
        if not allowed:
            raise RateLimitExceeded(
                limit_type="RPM",
                limit=limit,
                remaining=0,
                retry_after=60 - datetime.now(UTC).second,
            )

        allowed, remaining, reset_seconds, token_window = await self.token_limiter.check_and_consume(
            key, tokens
        )
        if not allowed:
            await self.request_limiter.refund(request_window)
            raise RateLimitExceeded(
                limit_type="TPM",
                limit=await self.token_limiter.get_limit(key),
                remaining=remaining,
                retry_after=reset_seconds,
            )

        return RateLimitReservation(
            key=key, tokens=tokens, token_window=token_window, request_window=request_window
        )

    async def release(self, reservation: RateLimitReservation) -> None:
        if reservation.token_window:
            await self.token_limiter.refund(reservation.token_window, reservation.tokens)
        if reservation.request_window:
            await self.request_limiter.refund(reservation.request_window)


# Global rate limiter instance
_rate_limiter: CombinedRateLimiter | None = None


def get_rate_limiter() -> CombinedRateLimiter | None:
    """Get or create the global rate limiter, or None when limiting is disabled."""
    global _rate_limiter

    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None

    if _rate_limiter is None:
        redis_client = redis.from_url(settings.redis_url)
        _rate_limiter = CombinedRateLimiter(
            redis_client=redis_client,
            default_tpm=settings.rate_limit_tpm,
            default_rpm=settings.rate_limit_rpm,
        )

    return _rate_limiter


__all__ = [
    "CombinedRateLimiter",
    "RateLimitExceeded",
    "RateLimitReservation",
    "RateLimiter",
    "RequestRateLimiter",
    "TokenRateLimiter",
    "get_rate_limiter",
]
