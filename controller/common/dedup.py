"""
Event De-duplication Cache

Bounded, time-windowed set of already-processed event ids. Injected into
the demand-response handler so a sharded deployment can swap the
in-memory cache for a shared store with the same interface.
"""

import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from .config import DedupSettings
from .timestamp import utc_now


class DedupCache(Protocol):
    """Interface for event-id de-duplication"""

    def get(self, key: str) -> Any | None:
        """Return the stored value for a key seen within the window"""
        ...

    def put(self, key: str, value: Any) -> None:
        """Remember a key (and the result produced for it)"""
        ...


class TTLDedupCache:
    """
    In-memory dedup cache with explicit eviction.

    Entries expire after ttl_s; when max_entries is reached the oldest
    entry is evicted first.
    """

    def __init__(
        self,
        ttl_s: float = 86400.0,
        max_entries: int = 10000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ttl = timedelta(seconds=ttl_s)
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[datetime, Any]] = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: DedupSettings) -> "TTLDedupCache":
        return cls(ttl_s=settings.ttl_s, max_entries=settings.max_entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            self._evict_expired()
            entry = self._entries.get(key)
            return entry[1] if entry else None

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._evict_expired()
            self._entries.pop(key, None)
            self._entries[key] = (self._clock(), value)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._entries)

    def _evict_expired(self) -> None:
        cutoff = self._clock() - self._ttl
        while self._entries:
            oldest_key = next(iter(self._entries))
            stored_at, _ = self._entries[oldest_key]
            if stored_at >= cutoff:
                break
            del self._entries[oldest_key]
