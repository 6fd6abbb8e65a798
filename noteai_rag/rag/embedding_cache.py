"""Redis-backed embedding cache.

Entries are keyed by model and a digest of the preprocessed text and expire
after a TTL. Vectors are stored as packed float64 bytes so cached values are
identical to freshly computed ones.
"""

import hashlib
import time

import numpy as np
import redis.asyncio as redis


class EmbeddingCache:
    """Embedding cache using Redis.

    Key structure:
    - emb:{model}:{digest} -> vector bytes (SETEX with the cache TTL)
    - emb:index -> sorted set of cached keys scored by write time, trimmed
      to ``max_entries`` oldest-first
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_seconds: int = 3600,
        max_entries: int = 10000,
        prefix: str = "emb",
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.prefix = prefix
        self.hits = 0
        self.misses = 0

    @property
    def index_key(self) -> str:
        return f"{self.prefix}:index"

    def key(self, model: str, text: str) -> str:
        """Cache key from model and text."""
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:32]
        return f"{self.prefix}:{model}:{digest}"

    async def get(self, model: str, text: str) -> list[float] | None:
        cached = await self.redis.get(self.key(model, text))
        if cached is None:
            self.misses += 1
            return None
        self.hits += 1
        return np.frombuffer(cached, dtype=np.float64).tolist()

    async def set(self, model: str, text: str, vector: list[float]) -> None:
        key = self.key(model, text)
        pipe = self.redis.pipeline()
        pipe.setex(key, self.ttl_seconds, np.asarray(vector, dtype=np.float64).tobytes())
        pipe.zadd(self.index_key, {key: time.time()})
        await pipe.execute()
        await self._enforce_limit()

    async def _enforce_limit(self) -> None:
        """Remove the oldest entries once the limit is exceeded."""
        count = await self.redis.zcard(self.index_key)
        if count <= self.max_entries:
            return
        oldest = await self.redis.zpopmin(self.index_key, count - self.max_entries)
        if oldest:
            await self.redis.delete(*[member for member, _ in oldest])

    async def clear(self) -> None:
        keys = await self.redis.zrange(self.index_key, 0, -1)
        await self.redis.delete(*keys, self.index_key)
        self.hits = 0
        self.misses = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    async def close(self) -> None:
        await self.redis.aclose()
