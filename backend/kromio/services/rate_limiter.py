"""In-process moving-window rate limiter backed by the ``limits`` library.

A soft, best-effort guard against runaway clients: state lives in process
memory only and is not shared across workers.
"""

import time

import structlog
from cachetools import TTLCache
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

logger = structlog.get_logger(__name__)


class SlidingWindowRateLimiter:
    """Allows at most ``max_requests`` hits per key within ``window_seconds``.

    Rejected hits are not recorded, so a throttled caller regains capacity as
    soon as its oldest accepted hit leaves the window. Expired windows are
    dropped by the memory storage; ``active_keys`` only indexes keys seen
    within the last window and is capped at ``max_keys``.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        *,
        max_keys: int = 10_000,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = max(1, round(window_seconds))
        self.max_keys = max_keys
        self.item = RateLimitItemPerSecond(max_requests, self.window_seconds)
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)
        self.active_keys: TTLCache = TTLCache(maxsize=max_keys, ttl=self.window_seconds)

    def __len__(self) -> int:
        self.active_keys.expire()
        return len(self.active_keys)

    def check(self, key: str) -> bool:
        """True if a hit for ``key`` would be accepted now. Records nothing."""
        return self.limiter.test(self.item, key)

    def hit(self, key: str) -> bool:
        """Check and record in one step. Returns False when throttled."""
        if not self.limiter.hit(self.item, key):
            logger.warning("rate_limit_exceeded", key=key, limit=self.max_requests)
            return False
        self.active_keys[key] = True
        return True

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` regains capacity (0 when it has some now)."""
        stats = self.limiter.get_window_stats(self.item, key)
        if stats.remaining > 0:
            return 0.0
        return max(0.0, stats.reset_time - time.time())

    def sweep(self) -> int:
        """Drop keys with no hits left in the window. Returns how many were dropped."""
        dropped = len(self.active_keys.expire())
        if dropped:
            logger.debug("rate_limit_sweep", dropped=dropped, remaining=len(self.active_keys))
        return dropped
