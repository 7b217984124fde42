# Core Module - Bounded LRU Cache
#
# Fixed-capacity, thread-safe mapping with least-recently-used
# eviction.  Owned explicitly by the component that creates it; used
# for per-subscriber delivery rate windows.

import threading
from collections import OrderedDict
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Thread-safe LRU cache with a hard capacity.

    Args:
        capacity: Maximum number of entries.  Inserting past capacity
                  evicts the least recently used entry.
    """

    def __init__(self, capacity: int = 10_000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._lock = threading.RLock()
        self._data: "OrderedDict[K, V]" = OrderedDict()
        self._evictions = 0
        self._hits = 0
        self._misses = 0

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Return the cached value and mark it most recently used."""
        with self._lock:
            if key not in self._data:
                self._misses += 1
                return default
            self._data.move_to_end(key)
            self._hits += 1
            return self._data[key]

    def put(self, key: K, value: V) -> None:
        """Insert or replace a value, evicting the LRU entry when full."""
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            self._data[key] = value
            while len(self._data) > self._capacity:
                self._data.popitem(last=False)
                self._evictions += 1

    def update(self, key: K, fn: Callable[[Optional[V]], V]) -> V:
        """Atomically replace ``key`` with ``fn(current_value)``."""
        with self._lock:
            current = self._data.get(key)
            value = fn(current)
            self.put(key, value)
            return value

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            return self._data.pop(key, default)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def capacity(self) -> int:
        return self._capacity

    def clear(self) -> int:
        """Clear all entries. Returns count removed."""
        with self._lock:
            count = len(self._data)
            self._data.clear()
            return count

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._data),
                "capacity": self._capacity,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }
