"""In-memory key-value store with per-key expiry.

Notes:
- Per-process only: running multiple workers gives each worker its own
  counters and locks, so limits multiply and duplicates are only caught
  within one worker.
- Thread-safe: every primitive runs under a single lock, which makes
  increment and set-if-absent atomic.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from subsidy_api.adapters.store.base import AbstractKeyValueStore, CounterSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: str | int
    expires_at: float


class InMemoryKeyValueStore(AbstractKeyValueStore):
    """Dict-backed store suitable for single-instance deployments and tests.

    Expired entries are dropped lazily on access and swept whenever a write
    finds the store over ``max_entries``.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        max_entries: int | None = None,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source function returning UNIX time in seconds.
            max_entries: Soft cap on stored keys; None for unlimited.

        Raises:
            ValueError: If max_entries is invalid.
        """
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")

        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryKeyValueStore(size={len(self._entries)}, max_entries={self._max_entries})"

    def _live_entry_locked(self, key: str, now: float) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _sweep_if_over_capacity_locked(self, now: float) -> None:
        if self._max_entries is None or len(self._entries) < self._max_entries:
            return

        expired_keys = [k for k, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired_keys:
            del self._entries[key]

        if len(self._entries) >= self._max_entries:
            # Live entries (locks, counters) are never evicted.
            logger.warning(
                "store.memory_over_capacity",
                extra={"entries": len(self._entries), "max_entries": self._max_entries},
            )

    async def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        with self._lock:
            now = self._clock()
            entry = self._live_entry_locked(key, now)
            if entry is None:
                self._sweep_if_over_capacity_locked(now)
                entry = _Entry(value=0, expires_at=now + window_seconds)
                self._entries[key] = entry

            entry.value = int(entry.value) + 1
            return CounterSnapshot(
                count=entry.value,
                reset_at=entry.expires_at,
                ttl_seconds=entry.expires_at - now,
            )

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            if self._live_entry_locked(key, now) is not None:
                return False
            self._sweep_if_over_capacity_locked(now)
            self._entries[key] = _Entry(value=value, expires_at=now + ttl_seconds)
            return True

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry_locked(key, self._clock())
            return None if entry is None else str(entry.value)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._sweep_if_over_capacity_locked(now)
            self._entries[key] = _Entry(value=value, expires_at=now + ttl_seconds)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def ping(self) -> bool:
        return True

    def size(self) -> int:
        """Number of live entries (expired ones are not counted)."""
        with self._lock:
            now = self._clock()
            return sum(1 for entry in self._entries.values() if entry.expires_at > now)
