"""Exceptions for token-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class AcquireTimeoutError(SemaphoreError, TimeoutError):
    """Raised when a scoped acquire gets no token before its timeout.

    Plain ``acquire()`` calls report a timeout by returning ``None``; this
    is only raised by :meth:`Semaphore.leased`, whose ``with`` body cannot
    be skipped.
    """

    def __init__(self, name: str, timeout: float | None) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(
            f"Semaphore '{name}' had no free token within {timeout}s"
        )
