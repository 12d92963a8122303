"""Thread-safe, bounded, in-memory sliding-window rate limiter.

Used on the public confirmation endpoint, where the only credential is the
token in the link: each client key (the remote address) gets ``limit`` hits
per ``window_seconds``.

Design decisions
────────────────
• **OrderedDict** of client key → deque of hit times, kept in LRU order so
  the least recently seen clients are evicted once ``max_keys`` is reached;
  memory stays bounded no matter how many addresses show up.
• **threading.Lock** for thread safety (handlers may run in a thread pool).
• Purely ephemeral — state is lost on process restart and is per process.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_KEYS = 10_000


class SlidingWindowLimiter:
    """Allow at most ``limit`` hits per key within any ``window_seconds`` span."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._hits: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Record a hit for *key*; return ``False`` if it is over the limit.

        Rejected hits are not recorded, so a client that backs off regains
        access once its earlier hits leave the window.
        """
        now = self._clock()
        cutoff = now - self._window
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                hits = deque()
                self._hits[key] = hits
                while len(self._hits) > self._max_keys:
                    evicted, _ = self._hits.popitem(last=False)
                    logger.debug("Rate limiter: evicted %s", evicted)
            else:
                self._hits.move_to_end(key)

            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self._limit:
                return False
            hits.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)
