"""Injectable TTL cache for computed schedules, invalidated by epoch."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Generic, Optional, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class _CacheEntry(Generic[T]):
    value: T
    stored_at: float
    epoch: int


class ScheduleCache(Generic[T]):
    """Keyed cache whose entries expire after ``ttl_seconds`` or on epoch bump.

    Expired entries are pruned on every ``put`` and the least recently used
    entry is evicted once ``max_entries`` is exceeded. ``clock`` defaults to
    ``time.monotonic`` and is injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
        epoch: int = 0,
        max_entries: int = 128,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl_seconds = float(ttl_seconds)
        self._clock = clock or time.monotonic
        self._epoch = epoch
        self._max_entries = max_entries
        self._entries: OrderedDict[str, _CacheEntry[T]] = OrderedDict()
        self._lock = RLock()

    @property
    def epoch(self) -> int:
        return self._epoch

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_live(self, entry: _CacheEntry[T], now: float) -> bool:
        return now - entry.stored_at <= self._ttl_seconds and entry.epoch == self._epoch

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._is_live(entry, self._clock()):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.value

    def put(self, key: str, value: T) -> None:
        with self._lock:
            now = self._clock()
            for stale in [name for name, entry in self._entries.items() if not self._is_live(entry, now)]:
                del self._entries[stale]
            self._entries[key] = _CacheEntry(value=value, stored_at=now, epoch=self._epoch)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def bump_epoch(self) -> int:
        with self._lock:
            self._epoch += 1
            self._entries.clear()
            return self._epoch
