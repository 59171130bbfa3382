"""
Bounded, expiring token-count cache.

Owned by the caller and passed to the estimator; nothing in the package keeps
a process-wide instance.
"""

import hashlib
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional


class TokenCountCache:
    """
    Thread-safe, content-addressed cache of token estimates.

    Keys are ``sha256(text)[:16]``. Entries expire ``ttl_seconds`` after they
    were stored and the least recently used entry is evicted once
    ``max_entries`` is reached.
    """

    def __init__(
        self,
        max_entries: int = 4096,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._store: "OrderedDict[str, tuple[int, float]]" = OrderedDict()

    @staticmethod
    def _key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]

    def get(self, text: str) -> Optional[int]:
        key = self._key(text)
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            count, stored_at = entry
            if now - stored_at > self.ttl_seconds:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return count

    def put(self, text: str, token_count: int) -> None:
        key = self._key(text)
        with self._lock:
            self._store[key] = (token_count, self._clock())
            self._store.move_to_end(key)
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __repr__(self) -> str:
        return f"TokenCountCache(entries={len(self)}, max={self.max_entries})"
