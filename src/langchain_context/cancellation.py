"""
Cooperative cancellation for batch operations and background maintenance.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CancelledException(Exception):
    """Raised when an operation observes a cancelled token."""


class CancelToken:
    """
    Thread-safe cancellation token.

    A session teardown calls ``cancel()``; workers poll ``is_cancelled`` or
    call ``raise_if_cancelled()`` before starting each unit of work.
    """

    def __init__(self):
        self._cancelled = False
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation. Idempotent; callbacks run once."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)

        self._event.set()

        # Outside the lock so callbacks may touch the token
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancel callback failed: %s", e)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledException("Operation cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback; runs immediately if already cancelled."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
