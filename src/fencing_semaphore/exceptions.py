"""Exceptions for fencing-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class SemaphoreConfigurationError(SemaphoreError, ValueError):
    """Raised when a semaphore operation is called with invalid arguments.

    This is raised before any store access, so nothing in Redis has been
    touched when it surfaces.
    """


class SemaphoreUnavailableError(SemaphoreError):
    """Raised when the context manager form could not obtain a slot.

    Plain ``acquire()`` calls report this case as ``False`` instead.
    """

    def __init__(self, key: str, value: int) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Semaphore '{key}' has no free slot (capacity={value})")
