"""Redis token bucket guarding payment creation."""

from time import time

import redis

from gstpay.common.errors import RateLimited
from gstpay.common.logging import logger


class TokenBucketLimiter:
    """Per-key token bucket (capacity = refill rate = limit per minute)."""

    def __init__(self, rdb, limit_per_minute: int) -> None:
        self.rdb = rdb
        self.limit_per_minute = limit_per_minute

    @classmethod
    def from_url(cls, redis_url: str, limit_per_minute: int) -> "TokenBucketLimiter":
        rdb = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=0.5,
            socket_timeout=0.5,
        )
        return cls(rdb, limit_per_minute)

    def consume(self, subject: str) -> None:
        """Take one token for `subject` or raise `RateLimited`.

        Redis outages fail open: the request is allowed and a warning logged.
        """

        key = f"tokenbucket:payments:{subject}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0
        try:
            values = self.rdb.hmget(key, "tokens", "updated_at")
            tokens = float(values[0]) if values[0] is not None else capacity
            updated_at = float(values[1]) if values[1] is not None else now
            elapsed = max(0.0, now - updated_at)
            tokens = min(capacity, tokens + elapsed * refill_per_sec)

            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
            self.rdb.expire(key, 120)
        except redis.RedisError as exc:
            logger.warning("rate_limit_unavailable subject=%s error=%s", subject, exc)
            return
        if not allowed:
            raise RateLimited("rate limit exceeded")
