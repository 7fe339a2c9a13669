"""In-memory sliding-window rate limiter for the webhook endpoints.

Keyed by client IP.  State is per process; behind several workers each
one enforces its own window.
"""

import time


class RateLimiter:
    """Sliding-window request limiter.

    Args:
        max_requests: Maximum requests allowed in the window.
        window_seconds: Length of the sliding window in seconds.
    """

    _PRUNE_INTERVAL: int = 500  # prune idle keys every N calls

    def __init__(self, max_requests: int = 60, window_seconds: int = 60) -> None:
        self._max = max_requests
        self._window = window_seconds
        self._hits: dict[str, list[float]] = {}
        self._calls = 0

    def _prune_idle_keys(self, now: float) -> None:
        cutoff = now - self._window
        for key in [k for k, ts in self._hits.items() if not ts or ts[-1] <= cutoff]:
            del self._hits[key]

    def _recent(self, key: str, now: float) -> list[float]:
        cutoff = now - self._window
        return [t for t in self._hits.get(key, []) if t > cutoff]

    def is_allowed(self, key: str) -> bool:
        """Record a hit for *key*; False if it is over the limit."""
        now = time.monotonic()
        self._calls += 1
        if self._calls % self._PRUNE_INTERVAL == 0:
            self._prune_idle_keys(now)

        timestamps = self._recent(key, now)
        if len(timestamps) >= self._max:
            self._hits[key] = timestamps
            return False
        timestamps.append(now)
        self._hits[key] = timestamps
        return True

    def retry_after(self, key: str) -> int:
        """Whole seconds until *key* may send again (0 if it may now)."""
        now = time.monotonic()
        timestamps = self._recent(key, now)
        if len(timestamps) < self._max:
            return 0
        return max(int(timestamps[0] + self._window - now) + 1, 1)

    def reset(self) -> None:
        self._hits.clear()


# CI servers batch stage notifications at the end of a run, so the window
# is generous.
webhook_limiter = RateLimiter(max_requests=120, window_seconds=60)
