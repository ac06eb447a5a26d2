import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable

from errors import RateLimitError
from logging_config import get_logger

logger = get_logger(__name__)


class SlidingWindowLimiter:
    """Sliding-window hit counters keyed by arbitrary hashable keys.

    Keys are usually ``(identity, action)`` tuples, e.g. ``("10.0.0.1", "create")``
    or ``(connection_id, "chat")``. Only allowed hits are recorded, so a caller
    hammering a closed window does not push its own reopening further out.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: Dict[Hashable, Deque[float]] = {}

    def _prune(self, hits: Deque[float], now: float, window_seconds: float) -> None:
        while hits and now - hits[0] >= window_seconds:
            hits.popleft()

    def allow(self, key: Hashable, window_seconds: float, max_count: int) -> bool:
        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        self._prune(hits, now, window_seconds)
        if len(hits) >= max_count:
            return False
        hits.append(now)
        return True

    def check(self, key: Hashable, window_seconds: float, max_count: int, message: str = None) -> None:
        if not self.allow(key, window_seconds, max_count):
            logger.warning(f"Rate limit exceeded for {key!r} ({max_count}/{window_seconds}s)")
            raise RateLimitError(message)

    def retry_after(self, key: Hashable, window_seconds: float) -> float:
        """Seconds until the oldest recorded hit leaves the window."""
        hits = self._hits.get(key)
        if not hits:
            return 0.0
        return max(0.0, window_seconds - (self._clock() - hits[0]))

    def forget(self, identity: Hashable) -> int:
        """Drop every window whose key is ``identity`` or a tuple starting with it."""
        stale = [k for k in self._hits if k == identity or (isinstance(k, tuple) and k and k[0] == identity)]
        for k in stale:
            del self._hits[k]
        return len(stale)

    def purge_idle(self, window_seconds: float) -> int:
        """Drop keys whose newest hit is older than ``window_seconds``."""
        now = self._clock()
        idle = [k for k, hits in self._hits.items() if not hits or now - hits[-1] >= window_seconds]
        for k in idle:
            del self._hits[k]
        return len(idle)

    def __len__(self) -> int:
        return len(self._hits)
