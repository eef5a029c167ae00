import logging
import threading
from typing import Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from analytics.models import Sample

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_CAPACITY = 1440


class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO over a preallocated list.

    Once full, each append overwrites the oldest slot and advances the head.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._slots: List[Optional[T]] = [None] * capacity
        self._head = 0
        self._size = 0

    def append(self, item: T) -> None:
        if self._size < self.capacity:
            self._slots[(self._head + self._size) % self.capacity] = item
            self._size += 1
        else:
            self._slots[self._head] = item
            self._head = (self._head + 1) % self.capacity

    def replace_last(self, item: T) -> None:
        if self._size == 0:
            raise IndexError("replace_last on empty buffer")
        self._slots[(self._head + self._size - 1) % self.capacity] = item

    def last(self) -> Optional[T]:
        if self._size == 0:
            return None
        return self._slots[(self._head + self._size - 1) % self.capacity]

    def snapshot(self) -> Tuple[T, ...]:
        if self._head + self._size <= self.capacity:
            return tuple(self._slots[self._head:self._head + self._size])
        tail = (self._head + self._size) % self.capacity
        return tuple(self._slots[self._head:] + self._slots[:tail])

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._head = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size


class HistoryStore:
    """Owns a bounded, chronologically ordered sample history per instrument.

    Readers get immutable tuples; an unknown instrument reads as an empty history.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._buffers: Dict[str, RingBuffer[Sample]] = {}
        self._lock = threading.Lock()

    def _buffer(self, instrument_id: str) -> RingBuffer[Sample]:
        buf = self._buffers.get(instrument_id)
        if buf is None:
            buf = RingBuffer(self.capacity)
            self._buffers[instrument_id] = buf
        return buf

    def append(self, instrument_id: str, sample: Sample) -> None:
        with self._lock:
            self._buffer(instrument_id).append(sample)

    def upsert(self, instrument_id: str, sample: Sample, bucket_ms: int = 1) -> bool:
        """Append ``sample`` unless it belongs to the tail's bucket, in which case it replaces the tail.

        Samples older than the tail's bucket are dropped. Returns True when the history changed.
        """
        with self._lock:
            return self._upsert_locked(self._buffer(instrument_id), sample, bucket_ms)

    def extend(self, instrument_id: str, samples: Iterable[Sample], bucket_ms: int = 1) -> int:
        changed = 0
        with self._lock:
            buf = self._buffer(instrument_id)
            for sample in samples:
                if self._upsert_locked(buf, sample, bucket_ms):
                    changed += 1
        return changed

    @staticmethod
    def _upsert_locked(buf: RingBuffer[Sample], sample: Sample, bucket_ms: int) -> bool:
        bucket_ms = max(1, int(bucket_ms))
        tail = buf.last()
        if tail is None:
            buf.append(sample)
            return True
        tail_bucket = tail.timestamp // bucket_ms
        bucket = sample.timestamp // bucket_ms
        if bucket < tail_bucket:
            logger.debug(
                "Dropping out-of-order sample for %s (ts=%s < tail=%s)",
                sample.instrument_id,
                sample.timestamp,
                tail.timestamp,
            )
            return False
        if bucket == tail_bucket:
            if sample == tail or sample.timestamp < tail.timestamp:
                return False
            buf.replace_last(sample)
            return True
        buf.append(sample)
        return True

    def get(self, instrument_id: str) -> Tuple[Sample, ...]:
        with self._lock:
            buf = self._buffers.get(instrument_id)
            return buf.snapshot() if buf is not None else ()

    def latest(self, instrument_id: str) -> Optional[Sample]:
        with self._lock:
            buf = self._buffers.get(instrument_id)
            return buf.last() if buf is not None else None

    def instruments(self) -> List[str]:
        with self._lock:
            return [key for key, buf in self._buffers.items() if len(buf)]

    def clear(self, instrument_id: Optional[str] = None) -> None:
        with self._lock:
            if instrument_id is None:
                self._buffers.clear()
            else:
                self._buffers.pop(instrument_id, None)

    def __len__(self) -> int:
        return len(self._buffers)
