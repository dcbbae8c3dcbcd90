"""Key naming and the client-side holder context."""

from __future__ import annotations

from dataclasses import dataclass

from .exceptions import SemaphoreConfigurationError


@dataclass(frozen=True)
class SemaphoreKeys:
    """Redis keys used by one semaphore.

    Every process sharing a semaphore named ``N`` derives the same keys:
    ``N`` for the timer set, ``N:owner`` for the owner set, ``N:counter``
    for the sequence counter and ``N:lock`` for the advisory lock.
    """

    timer: str
    owner: str
    counter: str
    lock: str

    @classmethod
    def for_name(cls, name: str) -> SemaphoreKeys:
        if not name:
            raise SemaphoreConfigurationError("Semaphore name cannot be empty")
        return cls(
            timer=name,
            owner=f"{name}:owner",
            counter=f"{name}:counter",
            lock=f"{name}:lock",
        )


@dataclass(frozen=True)
class SemaphoreContext:
    """Handle returned by a successful acquire.

    Pass it back to ``extend()`` and ``release()``. It lives only in the
    caller's process; nothing about it is stored in Redis.
    """

    identifier: str
    name: str
    owner_key: str


def validate_context(context: object) -> SemaphoreContext:
    """Return ``context`` if it is a usable handle, else raise."""
    if not isinstance(context, SemaphoreContext):
        raise SemaphoreConfigurationError(
            f"Expected a SemaphoreContext, got {type(context).__name__}"
        )
    return context


def validate_acquire_args(name: str, capacity: int, timeout: float) -> SemaphoreKeys:
    """Check acquire arguments and derive the keys for ``name``."""
    keys = SemaphoreKeys.for_name(name)
    if capacity <= 0:
        raise SemaphoreConfigurationError("Semaphore capacity must be greater than zero")
    if timeout <= 0:
        raise SemaphoreConfigurationError("Semaphore timeout must be greater than zero")
    return keys
