"""Cooperative cancellation for multi-step operations."""
from __future__ import annotations

import threading

from .errors import OperationCancelled


class CancellationToken:
    """Flag checked between remote steps; a running step is never interrupted."""

    def __init__(self) -> None:
        """Create an unset token."""
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """Request cancellation."""
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once cancellation was requested."""
        return self._event.is_set()

    def raise_if_cancelled(self, before: str) -> None:
        """Raise :class:`OperationCancelled` if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelled(f"Cancelled before {before}: {self._reason}")


__all__ = ["CancellationToken"]
