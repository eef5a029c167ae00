import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

V = TypeVar('V')


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    fetched_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class TTLCache(Generic[V]):
    """Per-key cache of the most recent value with a single, uniform TTL.

    The cache performs no I/O. Callers partition their keys with :meth:`partition`,
    fetch the stale ones themselves and write results back with :meth:`put`.
    """

    def __init__(self, ttl_s: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def now(self) -> float:
        return self._clock()

    def get(self, key: str, now: Optional[float] = None) -> Optional[V]:
        now = self._clock() if now is None else now
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_valid(now):
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def put(
        self,
        key: str,
        value: V,
        ttl_s: Optional[float] = None,
        fetched_at: Optional[float] = None,
    ) -> None:
        """Store ``value``; ``fetched_at`` defaults to now and may be set to when the read began."""
        stamp = self._clock() if fetched_at is None else fetched_at
        entry = CacheEntry(value=value, fetched_at=stamp, ttl=float(ttl_s or self.ttl_s))
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def partition(
        self, keys: Iterable[str], now: Optional[float] = None
    ) -> Tuple[Dict[str, V], List[str]]:
        """Split ``keys`` into fresh cached values and keys that need a fetch.

        Stale keys keep their input order; duplicates are dropped.
        """
        fresh: Dict[str, V] = {}
        stale: List[str] = []
        for key in keys:
            if key in fresh or key in stale:
                continue
            value = self.get(key, now)
            if value is None:
                stale.append(key)
            else:
                fresh[key] = value
        return fresh, stale

    def __len__(self) -> int:
        return len(self._entries)
