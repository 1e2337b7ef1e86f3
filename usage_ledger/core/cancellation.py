"""
Cooperative cancellation and pausing.

Long-running calls receive a token and check it between files and batches.
"""

import threading
import time
from typing import Optional

from .errors import SyncError, SyncErrorKind

PAUSE_POLL_SECONDS = 0.1


class CancellationToken:
    """Cancellation flag with an optional pause gate."""

    def __init__(self):
        self._cancelled = threading.Event()
        self._running = threading.Event()
        self._running.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        # Wake any paused waiter so it can observe the cancellation
        self._running.set()

    def pause(self) -> None:
        if not self.cancelled:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def raise_if_cancelled(self) -> None:
        """Raise SyncError(CANCELLED) once cancellation was requested."""
        if self.cancelled:
            raise SyncError(SyncErrorKind.CANCELLED, "Sync was cancelled")

    def checkpoint(self, poll_interval: float = PAUSE_POLL_SECONDS) -> None:
        """Block while paused, then raise if cancelled.

        Called at unit-of-work boundaries; yields the GIL even when running.
        """
        while not self._running.wait(poll_interval):
            pass
        self.raise_if_cancelled()
        time.sleep(0)


def checkpoint(token: Optional[CancellationToken]) -> None:
    """Checkpoint helper that tolerates a missing token."""
    if token is not None:
        token.checkpoint()
