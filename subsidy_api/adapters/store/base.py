"""Key-value store interfaces.

The admission layer depends on this abstraction (not the concrete
implementation) so storage backends can be swapped with minimal changes.

Every method that mutates state is a single atomic primitive of the backend.
Callers must never emulate one with a read followed by a write.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached or answers with an error."""


@dataclass(frozen=True)
class CounterSnapshot:
    """State of a window counter right after an increment.

    Attributes:
        count: Post-increment number of hits in the current window.
        reset_at: UNIX epoch seconds when the counter expires.
        ttl_seconds: Seconds left until ``reset_at``, as seen by the store.
    """

    count: int
    reset_at: float
    ttl_seconds: float


class AbstractKeyValueStore(ABC):
    """Interface for stores shared by the rate limiter and idempotency layer."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        """Atomically increment a window counter.

        Creates the counter with count=1 and an expiry of ``window_seconds``
        when it is absent or expired; otherwise increments it without touching
        the expiry.

        Raises:
            StoreUnavailableError: If the backend cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically store ``value`` only when ``key`` does not exist.

        Returns:
            True if the value was stored, False if the key already existed.

        Raises:
            StoreUnavailableError: If the backend cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the live value for ``key`` or None."""
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` with an expiry, overwriting any value."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the backend answers."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources. No-op by default."""
        return None
