"""Small in-process TTL cache.

Passed explicitly to the collaborators that need it (the payment-hub token
provider) so tests can hand in a fresh instance or a fake clock.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

__all__ = ["TTLCache"]


class TTLCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._items: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._items[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._items[key] = (value, self._clock() + ttl)

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: float) -> Any:
        """Return the cached value for *key*, computing it with *factory* on a miss."""

        sentinel = object()
        value = self.get(key, sentinel)
        if value is sentinel:
            value = factory()
            self.set(key, value, ttl)
        return value

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
