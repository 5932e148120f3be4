# rate_limiter.py
"""
Per-identity sliding-window rate limiting for the AI endpoints
"""
import time
import threading
import logging
from collections import deque
from typing import Callable, Deque, Optional

from cachetools import LRUCache

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Counts permitted attempts per identity over the trailing ``window_seconds``.

    Only permitted attempts are recorded, so a caller hammering a closed window
    does not extend its own lockout. The identity map is an LRU capped at
    ``max_identities``; ``sweep()`` drops identities whose window has emptied.
    """

    def __init__(self, max_requests: int = 30, window_seconds: float = 60,
                 max_identities: int = 10000, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: LRUCache = LRUCache(maxsize=max_identities)
        self._lock = threading.Lock()

    @property
    def retry_after(self) -> int:
        return int(self.window_seconds)

    def _prune(self, attempts: Deque[float], now: float):
        while attempts and now - attempts[0] >= self.window_seconds:
            attempts.popleft()

    def allow(self, identity: str) -> bool:
        """Record an attempt for ``identity`` and report whether it is permitted."""
        now = self._clock()
        with self._lock:
            attempts: Optional[Deque[float]] = self._attempts.get(identity)
            if attempts is None:
                attempts = deque()
            self._prune(attempts, now)

            if len(attempts) >= self.max_requests:
                self._attempts[identity] = attempts
                logger.warning(f"Rate limit exceeded for identity {identity}")
                return False

            attempts.append(now)
            self._attempts[identity] = attempts
            return True

    def remaining(self, identity: str) -> int:
        now = self._clock()
        with self._lock:
            attempts = self._attempts.get(identity)
            if attempts is None:
                return self.max_requests
            self._prune(attempts, now)
            return max(0, self.max_requests - len(attempts))

    def sweep(self) -> int:
        """Forget identities with no attempts inside the current window."""
        now = self._clock()
        with self._lock:
            stale = []
            for identity in list(self._attempts):
                attempts = self._attempts[identity]
                if not attempts or now - attempts[-1] >= self.window_seconds:
                    stale.append(identity)
            for identity in stale:
                del self._attempts[identity]
        return len(stale)

    def __len__(self) -> int:
        return len(self._attempts)

    def reset(self):
        with self._lock:
            self._attempts.clear()
