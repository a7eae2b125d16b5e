"""
Rate limiting for reading ingestion.

Sliding window, tracked per user.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: Optional[float] = None


class RateLimiter:
    """Thread-safe sliding window limiter."""

    def __init__(self, rpm: int, window_seconds: int = 60):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str, now: Optional[float] = None) -> RateLimitResult:
        """
        Record a hit for ``key`` unless it is over the limit.

        Args:
            key: Identifier for rate limiting (user ID)
            now: Hit time (default: current time)
        """
        now = time.time() if now is None else now
        window_start = now - self._window

        with self._lock:
            q = self._hits[key]
            while q and q[0] <= window_start:
                q.popleft()

            if len(q) >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    retry_after=max(0.0, q[0] + self._window - now),
                )

            q.append(now)
            return RateLimitResult(allowed=True, remaining=self._limit - len(q))

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()
