"""
Time-based cache with optional size bound
"""
from __future__ import annotations
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple

_MISSING = object()


class TTLCache:
    """
    Thread-safe cache whose entries expire `ttl` seconds after insertion

    An entry is valid while ``now - inserted_at < ttl``. Expired entries are
    dropped on lookup and must be replaced with put(). When `max_entries` is
    set, the least recently used entry is evicted once the cache is full.
    """

    def __init__(
        self,
        ttl: float,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self.lock = threading.Lock()
        self._entries: "OrderedDict[Hashable, Tuple[Any, float]]" = OrderedDict()

    def lookup(self, key: Hashable) -> Tuple[bool, Any]:
        """
        Returns:
            (hit, value). A cached None is a hit with value None.
        """
        with self.lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return False, None
            value, inserted_at = entry
            if self.clock() - inserted_at >= self.ttl:
                del self._entries[key]
                return False, None
            self._entries.move_to_end(key)
            return True, value

    def get(self, key: Hashable, default: Any = None) -> Any:
        hit, value = self.lookup(key)
        return value if hit else default

    def put(self, key: Hashable, value: Any) -> None:
        with self.lock:
            self._entries.pop(key, None)
            self._entries[key] = (value, self.clock())
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)
