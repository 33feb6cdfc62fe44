"""Non-blocking rate limiting for external enrichment sources."""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = 60.0


class RateLimiter:
    """Allow at most *limit* acquisitions in any rolling *period* seconds.

    ``try_acquire`` never blocks: when the quota is spent it returns
    ``False`` and the caller is expected to try again in a later cycle.

    Args:
        limit: Maximum number of acquisitions per window.
        period: Window length in seconds.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        limit: int,
        period: float = DEFAULT_PERIOD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        self.limit = limit
        self.period = period
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()
        self.rejected = 0

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.period:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        """Take one slot if the window has room."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) >= self.limit:
                self.rejected += 1
                return False
            self._calls.append(now)
            return True

    def remaining(self) -> int:
        """Slots still available in the current window."""
        with self._lock:
            self._prune(self._clock())
            return max(0, self.limit - len(self._calls))

    def retry_after(self) -> float:
        """Seconds until the oldest call in the window expires."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.limit or not self._calls:
                return 0.0
            return self.period - (now - self._calls[0])

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()
            self.rejected = 0


_registry: dict[str, RateLimiter] = {}
_registry_lock = threading.Lock()


def shared_limiter(name: str, limit: int, period: float = DEFAULT_PERIOD) -> RateLimiter:
    """Return the process-wide limiter registered under *name*.

    The first call creates the limiter; later calls return the same
    instance regardless of *limit*, so every caller shares one quota.
    """
    with _registry_lock:
        limiter = _registry.get(name)
        if limiter is None:
            limiter = RateLimiter(limit, period)
            _registry[name] = limiter
            logger.debug("Created shared limiter %s (%d per %.0fs)", name, limit, period)
        elif limiter.limit != limit:
            logger.debug(
                "Shared limiter %s already exists with limit %d; ignoring %d",
                name,
                limiter.limit,
                limit,
            )
        return limiter


def reset_shared_limiters() -> None:
    """Drop every shared limiter (administrative clear, used by tests)."""
    with _registry_lock:
        _registry.clear()
