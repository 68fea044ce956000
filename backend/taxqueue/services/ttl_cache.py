"""Bounded in-memory cache with per-entry TTL and LRU eviction."""
import threading
import time
from collections import OrderedDict
from typing import Any, Callable


class TTLCache:
    """LRU cache whose entries also expire `ttl` seconds after they were last set.

    Reads refresh recency but not expiry. When full, the least recently used
    entry is evicted to make room.
    """

    def __init__(self, max_size: int = 10000, ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._ttl = ttl
        self._clock = clock
        self._items: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: str) -> Any | None:
        """Return the live value for `key`, or None if absent or expired."""
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires = item
            if self._clock() > expires:
                del self._items[key]
                return None
            self._items.move_to_end(key)
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            expires = self._clock() + (self._ttl if ttl is None else ttl)
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = (value, expires)
            while len(self._items) > self._max_size:
                self._items.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def cleanup_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires) in self._items.items() if now > expires]
            for key in expired:
                del self._items[key]
            return len(expired)
