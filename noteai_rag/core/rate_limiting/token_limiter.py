"""Token and request rate limiting using Redis.

Fixed one-minute windows keyed as ``tpm:{key}:{YYYYmmddHHMM}`` and
``rpm:{key}:{YYYYmmddHHMM}``. Consumption can be refunded while its window is
still open, which is how cancelled remote calls give their slot back.
"""

from datetime import UTC, datetime

from redis.asyncio import Redis


def _minute_key(prefix: str, key: str, now: datetime) -> str:
    return f"{prefix}:{key}:{now.strftime('%Y%m%d%H%M')}"


class TokenRateLimiter:
    """Per-key token rate limiting (TPM)."""

    def __init__(self, redis: Redis, default_tpm: int = 100000, window_seconds: int = 60):
        self.redis = redis
        self.default_tpm = default_tpm
        self.window_seconds = window_seconds

    async def check_and_consume(self, key: str, tokens: int) -> tuple[bool, int, int, str]:
        """Check if tokens can be consumed and consume them.

        Args:
            key: Rate limit bucket
            tokens: Number of tokens to consume

        Returns:
            Tuple of (allowed, remaining_tokens, reset_seconds, window_key)
        """
        now = datetime.now(UTC)
        window_key = _minute_key("tpm", key, now)
        reset_seconds = self.window_seconds - now.second

        pipe = self.redis.pipeline()
        pipe.get(window_key)
        pipe.hget("limits:tpm", key)
        current_raw, limit_raw = await pipe.execute()

        current = int(current_raw) if current_raw else 0
        limit = int(limit_raw) if limit_raw else self.default_tpm

        if current + tokens > limit:
            return False, max(0, limit - current), reset_seconds, window_key

        pipe = self.redis.pipeline()
        pipe.incrby(window_key, tokens)
        pipe.expire(window_key, self.window_seconds + 10)  # Small buffer
        new_total, _ = await pipe.execute()

        return True, max(0, limit - new_total), reset_seconds, window_key

    async def refund(self, window_key: str, tokens: int) -> None:
        """Give tokens back to a window that has not expired yet."""
        if tokens > 0 and await self.redis.exists(window_key):
            await self.redis.decrby(window_key, tokens)

    async def get_limit(self, key: str) -> int:
        limit_raw = await self.redis.hget("limits:tpm", key)
        return int(limit_raw) if limit_raw else self.default_tpm


class RequestRateLimiter:
    """Per-key request rate limiting (RPM)."""

    def __init__(self, redis: Redis, default_rpm: int = 60, window_seconds: int = 60):
        self.redis = redis
        self.default_rpm = default_rpm
        self.window_seconds = window_seconds

    async def check_and_increment(self, key: str) -> tuple[bool, int, int, str]:
        """Check if a request is allowed and count it.

        A denied request is not counted.

        Returns:
            Tuple of (allowed, remaining_requests, limit, window_key)
        """
        now = datetime.now(UTC)
        window_key = _minute_key("rpm", key, now)

        limit_raw = await self.redis.hget("limits:rpm", key)
        limit = int(limit_raw) if limit_raw else self.default_rpm

        pipe = self.redis.pipeline()
        pipe.incr(window_key)
        pipe.expire(window_key, self.window_seconds + 10)
        current, _ = await pipe.execute()

        if current > limit:
            await self.redis.decr(window_key)
            return False, 0, limit, window_key

        return True, max(0, limit - current), limit, window_key

    async def refund(self, window_key: str) -> None:
        if await self.redis.exists(window_key):
            await self.redis.decr(window_key)
