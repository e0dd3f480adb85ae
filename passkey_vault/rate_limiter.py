"""
Rate limiting for passkey verification attempts

Token bucket per key; unlock verification uses
"passkey_unlock:{user_or_ip}" with settings.unlock_rate_limit attempts per
settings.unlock_window_seconds.
"""

import threading
from time import time
from typing import Callable, Dict


class SimpleRateLimiter:
    """
    Token bucket rate limiter

    Usage:
        if not rate_limiter.check_rate_limit(f"passkey_unlock:{client_ip}", max_requests=5, window_seconds=300):
            raise RateLimitExceededError(retry_after=300)
    """

    def __init__(self, clock: Callable[[], float] = time):
        self.buckets: Dict[str, Dict[str, float]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def check_rate_limit(self, key: str, max_requests: int, window_seconds: int) -> bool:
        """
        Check if request is within rate limit

        Args:
            key: Unique identifier for this rate limit bucket
            max_requests: Maximum number of requests allowed in the window
            window_seconds: Time window in seconds

        Returns:
            True if request is allowed, False if rate limit exceeded
        """
        now = self._clock()
        with self._lock:
            bucket = self.buckets.get(key)

            # A new key starts with a full bucket
            if bucket is None:
                bucket = {"tokens": float(max_requests), "last_update": now}
                self.buckets[key] = bucket

            time_passed = now - bucket["last_update"]
            bucket["tokens"] = min(
                max_requests,
                bucket["tokens"] + (time_passed * max_requests / window_seconds)
            )
            bucket["last_update"] = now

            if bucket["tokens"] >= 1:
                bucket["tokens"] -= 1
                return True
            return False

    def reset(self, key: str) -> None:
        with self._lock:
            self.buckets.pop(key, None)


def get_client_ip(request) -> str:
    """Extract client IP from request"""
    return request.client.host if request.client else "unknown"
