"""
Rate limiting. In-memory sliding window per key (client IP).
Used for POST /account/login and POST /token to blunt brute force and abuse;
per-user lockout lives in the user store.
"""
import math
import threading
import time
from typing import Callable

from fastapi import HTTPException, Request


class SlidingWindowLimiter:
    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def check_and_consume(self, key: str, limit: int) -> tuple[bool, int | None]:
        """
        Record a request for key if under limit within the window.
        Returns (allowed, retry_after_seconds); retry_after is >= 1 when refused.
        """
        if limit <= 0:
            return True, None
        now = self.clock()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = [t for t in self._hits.get(key, []) if t > cutoff]
            if len(hits) >= limit:
                self._hits[key] = hits
                retry_after = max(1, math.ceil(self.window_seconds - (now - min(hits))))
                return False, retry_after
            hits.append(now)
            self._hits[key] = hits
            return True, None


login_limiter = SlidingWindowLimiter()
token_limiter = SlidingWindowLimiter()


def enforce_rate_limit(request: Request, limiter: SlidingWindowLimiter, limit: int) -> None:
    """Raise 429 with Retry-After when the caller's IP is over its budget."""
    key = request.client.host if request.client else "unknown"
    allowed, retry_after = limiter.check_and_consume(f"{request.url.path}:{key}", limit)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "slow_down", "error_description": "Too many requests"},
            headers={"Retry-After": str(retry_after)},
        )
