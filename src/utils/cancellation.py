"""Cooperative cancellation for long-running export and replication runs."""

import threading
from typing import Optional


class OperationCancelled(Exception):
    """Raised by ``CancellationToken.raise_if_cancelled``."""


class CancellationToken:
    """Flag checked between tables, pages, parts and batches.

    Safe to set from a signal handler or another thread; the running operation
    notices at its next checkpoint.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelled")
