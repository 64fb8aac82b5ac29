"""Redis sliding window rate limiter for delivery providers."""

import time
import uuid

from redis import Redis

# Trims expired entries, checks the count and conditionally adds a member
# in a single EVAL, so concurrent workers cannot overshoot the limit.
_RATE_LIMIT_LUA = """
local key = KEYS[1]
local window_start = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local member = ARGV[4]
local ttl = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', window_start)
local count = redis.call('ZCARD', key)
if count >= limit then
    return 0
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, ttl)
return 1
"""


class RateLimiter:
    """Per-provider rate limiter using Redis sorted sets (sliding window).

    Each delivery attempt is a member of a sorted set keyed by provider
    name, scored by UNIX timestamp. The limit itself comes from the
    provider's ``rate_limit()`` so every worker enforces the same cap.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        redis_client: Redis,
        window_seconds: int = 60,
        clock=time.time,
    ) -> None:
        self._redis = redis_client
        self._window_seconds = window_seconds
        self._clock = clock
        self._script = self._redis.register_script(_RATE_LIMIT_LUA)

    def acquire(self, name: str, limit: int) -> bool:
        """Try to take a slot for *name* under *limit* per window.

        A non-positive limit means the provider imposes no cap.
        """
        if limit <= 0:
            return True

        key = f"{self.KEY_PREFIX}:{name}"
        now = self._clock()
        window_start = now - self._window_seconds
        ttl = self._window_seconds + 1

        result = self._script(
            keys=[key],
            args=[window_start, limit, now, str(uuid.uuid4()), ttl],
        )
        return bool(result)
