"""Cooperative cancellation shared by the learning stages."""

from __future__ import annotations

import threading


class OperationCancelled(RuntimeError):
    """Raised at a unit-of-work boundary once cancellation was requested."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("cancelled")
