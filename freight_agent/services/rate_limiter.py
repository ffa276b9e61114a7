# =============================================================================
# Rate Limiter: Per-Queue Sliding Window
# =============================================================================
#
# Bounds how many jobs a queue may start per window, to respect the quotas
# of the model and embedding APIs the pipeline calls.
#
# `acquire()` either admits the caller (returns 0.0) or returns how many
# seconds until the oldest admission leaves the window. It never drops
# work: a delayed job is re-scheduled by the caller with that countdown.
#
# Implementations:
#   RedisSlidingWindowLimiter : ZSET of admission timestamps shared by all
#                                worker processes (Redis db 2)
#   InMemorySlidingWindowLimiter: deque per process (tests, local pool)
#
# If Redis is unavailable the limiter admits the job and logs a warning,
# so a Redis outage cannot stall the queues.
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Protocol

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    limit: int
    window_seconds: float

    def acquire(self) -> float:
        """Admit one job now (0.0) or return the seconds to wait."""
        ...


class InMemorySlidingWindowLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._admitted: deque[float] = deque()

    def acquire(self) -> float:
        with self._lock:
            now = self._clock()
            while self._admitted and self._admitted[0] <= now - self.window_seconds:
                self._admitted.popleft()

            if len(self._admitted) < self.limit:
                self._admitted.append(now)
                return 0.0
            return max(self._admitted[0] + self.window_seconds - now, 0.0)


class RedisSlidingWindowLimiter:
    def __init__(
        self,
        client: Redis,
        key: str,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._client = client
        self._key = f"ratelimit:{key}"
        self._clock = clock

    def acquire(self) -> float:
        now = self._clock()
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"

        try:
            pipe = self._client.pipeline()
            # Remove entries outside the window
            pipe.zremrangebyscore(self._key, 0, now - self.window_seconds)
            pipe.zadd(self._key, {member: now})
            pipe.zcard(self._key)
            pipe.zrange(self._key, 0, 0, withscores=True)
            pipe.expire(self._key, int(self.window_seconds) + 10)
            results = pipe.execute()

            count = results[2]
            if count <= self.limit:
                return 0.0

            # Over the cap: withdraw this admission and report the wait
            self._client.zrem(self._key, member)
            oldest = results[3][0][1] if results[3] else now
            return max(oldest + self.window_seconds - now, 0.0)

        except RedisError as e:
            logger.warning(
                "Rate limiter unavailable (Redis error): %s. "
                "Admitting job.",
                e,
            )
            return 0.0
