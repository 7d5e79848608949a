"""Injectable TTL cache with LRU eviction and invalidation hooks.

Owned by whoever constructs it and handed to the components that may use it;
there is no module-level instance. Entries expire ``ttl_seconds`` after they
were written, and the least recently used entry is evicted once ``maxsize`` is
reached. Listeners registered with ``on_invalidate`` are told about every key
that leaves the cache and why ("expired", "evicted", "invalidated", "cleared").
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

InvalidationListener = Callable[[Hashable, str], None]


class TTLCache(Generic[K, V]):
    """Bounded mapping whose entries expire after a fixed time-to-live."""

    def __init__(
        self,
        maxsize: int = 1024,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._listeners: list[InvalidationListener] = []
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def on_invalidate(self, listener: InvalidationListener) -> None:
        """Register a callback for keys leaving the cache."""
        self._listeners.append(listener)

    def get(self, key: K) -> V | None:
        """Return the cached value, or None if absent or expired."""
        removed: list[tuple[K, str]] = []
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                removed.append((key, "expired"))
                self.misses += 1
                value = None
            else:
                self._entries.move_to_end(key)
                self.hits += 1
        self._notify(removed)
        return value

    def set(self, key: K, value: V) -> None:
        removed: list[tuple[K, str]] = []
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.maxsize:
                evicted, _ = self._entries.popitem(last=False)
                removed.append((evicted, "evicted"))
        self._notify(removed)

    def invalidate(self, key: K) -> bool:
        """Drop one key. Returns True if it was present."""
        with self._lock:
            present = self._entries.pop(key, None) is not None
        if present:
            self._notify([(key, "invalidated")])
        return present

    def invalidate_where(self, predicate: Callable[[K], bool]) -> int:
        """Drop every key matching ``predicate``; returns how many went."""
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
        self._notify([(key, "invalidated") for key in doomed])
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            doomed = list(self._entries)
            self._entries.clear()
        self._notify([(key, "cleared") for key in doomed])

    def _notify(self, removed: list[tuple[K, str]]) -> None:
        for key, reason in removed:
            for listener in self._listeners:
                listener(key, reason)
