from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from redis import asyncio as aioredis


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int = 0
    wait_seconds: int = 0


# Sliding-window request counter keyed by an arbitrary identity:tier string
class RedisSlidingWindowRateLimiter:
    def __init__(self, redis_url: str):
        self._client = aioredis.from_url(redis_url, decode_responses=True)

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        redis_key = f"chat_rate:{key}"
        now_ts = datetime.now(timezone.utc).timestamp()
        min_ts = now_ts - window_seconds
        member = f"{now_ts}:{uuid.uuid4().hex}"

        # Add-then-count runs as one MULTI. Redis errors propagate to the caller (fail closed).
        pipe = self._client.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, min_ts)
        pipe.zadd(redis_key, {member: now_ts})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.expire(redis_key, window_seconds + 5)
        _, _, count, oldest, _ = await pipe.execute()

        if int(count) > limit:
            # Over the ceiling: take back our own entry so denied requests don't extend the window
            await self._client.zrem(redis_key, member)
            oldest_ts = None
            if oldest and isinstance(oldest, list):
                oldest_ts = float(oldest[0][1])
            if oldest_ts is None:
                return RateLimitDecision(allowed=False, remaining=0, wait_seconds=window_seconds)
            wait_s = max(0, int((oldest_ts + window_seconds) - now_ts))
            return RateLimitDecision(allowed=False, remaining=0, wait_seconds=wait_s)

        return RateLimitDecision(allowed=True, remaining=max(0, limit - int(count)))


_singleton: Optional[RedisSlidingWindowRateLimiter] = None


def get_chat_rate_limiter() -> RedisSlidingWindowRateLimiter:
    global _singleton
    if _singleton is not None:
        return _singleton

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        raise RuntimeError("REDIS_URL must be set for chat rate limiting.")
    _singleton = RedisSlidingWindowRateLimiter(redis_url=redis_url)
    return _singleton
