from dataclasses import dataclass
from typing import List

MAX_RETRIES = 3
INITIAL_DELAY_MS = 1000
MAX_DELAY_MS = 10000


def backoff_delay(attempt: int, initial_ms: int = INITIAL_DELAY_MS, max_ms: int = MAX_DELAY_MS) -> int:
    """Delay in ms before retry number ``attempt`` (0-based): doubles from ``initial_ms``, capped at ``max_ms``."""
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    return min(initial_ms * (2 ** attempt), max_ms)


def backoff_schedule(
    retries: int = MAX_RETRIES,
    initial_ms: int = INITIAL_DELAY_MS,
    max_ms: int = MAX_DELAY_MS,
) -> List[int]:
    return [backoff_delay(attempt, initial_ms, max_ms) for attempt in range(retries)]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = MAX_RETRIES
    initial_delay_ms: int = INITIAL_DELAY_MS
    max_delay_ms: int = MAX_DELAY_MS

    def delay_s(self, attempt: int) -> float:
        return backoff_delay(attempt, self.initial_delay_ms, self.max_delay_ms) / 1000.0

    def schedule_ms(self) -> List[int]:
        return backoff_schedule(self.max_retries, self.initial_delay_ms, self.max_delay_ms)
