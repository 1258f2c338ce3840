"""
Process-local memoization of usage computations.

Absorbs bursts of repeated renders within one process. Nothing here is
shared between invocations and correctness never depends on a hit.
"""

import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 60

CacheKey = Tuple[str, str]


@dataclass(frozen=True)
class _Entry(Generic[T]):
    value: T
    expires_at: float
    cached_day: date


class LocalCache(Generic[T]):
    """In-memory cache keyed by (session id, project directory).

    Entries expire after ``ttl_seconds`` or as soon as the local calendar
    day changes, so a cost computed before midnight is never served after it.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        today: Callable[[], date] = date.today,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.today = today
        self._entries: Dict[CacheKey, _Entry[T]] = {}

    @staticmethod
    def make_key(session_id: str, project_dir: Optional[str]) -> CacheKey:
        return (session_id, project_dir or "")

    def _valid(self, entry: _Entry[T], now: float, today: date) -> bool:
        return entry.expires_at > now and entry.cached_day == today

    def get(self, session_id: str, project_dir: Optional[str]) -> Optional[T]:
        entry = self._entries.get(self.make_key(session_id, project_dir))
        if entry is None or not self._valid(entry, self.clock(), self.today()):
            return None
        return entry.value

    def put(self, session_id: str, project_dir: Optional[str], value: T) -> None:
        if self.ttl_seconds <= 0:
            return
        now = self.clock()
        today = self.today()
        self._entries = {
            key: entry for key, entry in self._entries.items() if self._valid(entry, now, today)
        }
        self._entries[self.make_key(session_id, project_dir)] = _Entry(
            value=value,
            expires_at=now + self.ttl_seconds,
            cached_day=today,
        )

    def get_or_compute(self, session_id: str, project_dir: Optional[str], compute: Callable[[], T]) -> T:
        cached = self.get(session_id, project_dir)
        if cached is not None:
            return cached
        value = compute()
        self.put(session_id, project_dir, value)
        return value

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Tuple[int, int]:
        """(total entries, entries still valid)."""
        now = self.clock()
        today = self.today()
        valid = sum(1 for entry in self._entries.values() if self._valid(entry, now, today))
        return len(self._entries), valid


# Process-wide instance
_default_cache: Optional[LocalCache] = None


def get_local_cache(ttl_seconds: Optional[int] = None) -> LocalCache:
    """Get the process-wide local cache instance.

    Args:
        ttl_seconds: TTL used when the instance is first created

    Returns:
        The shared LocalCache
    """
    global _default_cache
    if _default_cache is None:
        _default_cache = LocalCache(ttl_seconds if ttl_seconds is not None else DEFAULT_TTL_SECONDS)
    return _default_cache
