import threading
import time
from collections import deque
from typing import Callable

from .errors import RateLimited


class SlidingWindowLimiter:
    """Per-key hit counter over a rolling window (process memory, single instance)."""

    def __init__(self, max_hits: int, window_seconds: float, message: str, clock: Callable[[], float] = time.monotonic):
        self.max_hits = max_hits
        self.window = window_seconds
        self.message = message
        self.clock = clock
        self._hits: dict[str, deque] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _prune(self, key: str, now: float) -> deque | None:
        q = self._hits.get(key)
        if q is None:
            return None
        while q and now - q[0] >= self.window:
            q.popleft()
        if not q:
            del self._hits[key]
            return None
        return q

    def _sweep(self, now: float):
        # Keys of clients that went quiet would otherwise stay forever.
        if now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._prune(key, now)

    def consume(self, key: str, counted: bool = True):
        """Refuse once the window is full; otherwise record a hit if ``counted``.

        Check and record happen under one lock.
        """
        with self._lock:
            now = self.clock()
            self._sweep(now)
            q = self._prune(key, now)
            if q is not None and len(q) >= self.max_hits:
                raise RateLimited(self.message)
            if counted:
                self._hits.setdefault(key, deque()).append(now)
