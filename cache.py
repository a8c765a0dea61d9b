import logging
import threading
import time
from functools import lru_cache
from typing import Callable, Optional, Tuple

from config import get_settings
from models import RecordStore


logger = logging.getLogger(__name__)

# (clear epoch, per-month invalidation count)
Generation = Tuple[int, int]

SUMMARY = "summary"
BALANCES = "balances"
STATISTICS = "statistics"
DASHBOARD = "dashboard"


def pivot_kind(store: RecordStore) -> str:
    return f"pivot:{store.value}"


REPORT_KINDS = (
    SUMMARY,
    BALANCES,
    STATISTICS,
    DASHBOARD,
    *(pivot_kind(store) for store in RecordStore),
)


class ReportCache:
    """Month-partitioned report cache.

    The base class caches nothing, so it doubles as the no-op cache.
    """

    def get(self, kind: str, month_key: str) -> Optional[object]:
        return None

    def generation(self, month_key: str) -> Generation:
        return (0, 0)

    def set(
        self,
        kind: str,
        month_key: str,
        value: object,
        generation: Optional[Generation] = None,
    ) -> None:
        return None

    def invalidate_month(self, month_key: str) -> None:
        return None

    def clear(self) -> None:
        return None

    def remember(
        self, kind: str, month_key: str, compute: Callable[[], object]
    ) -> object:
        cached = self.get(kind, month_key)
        if cached is not None:
            return cached
        # a write that lands while computing must not be cached over
        generation = self.generation(month_key)
        value = compute()
        self.set(kind, month_key, value, generation)
        return value


class InMemoryReportCache(ReportCache):
    def __init__(
        self,
        ttl_secs: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_secs is None:
            ttl_secs = get_settings().cache_ttl_secs
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, tuple[float, object]]] = {}
        self._epoch = 0
        self._month_generations: dict[str, int] = {}

    def get(self, kind: str, month_key: str) -> Optional[object]:
        with self._lock:
            month_entries = self._entries.get(month_key)
            if not month_entries or kind not in month_entries:
                return None
            expires_at, value = month_entries[kind]
            if self._clock() >= expires_at:
                del month_entries[kind]
                return None
            return value

    def _current(self, month_key: str) -> Generation:
        return (self._epoch, self._month_generations.get(month_key, 0))

    def generation(self, month_key: str) -> Generation:
        with self._lock:
            return self._current(month_key)

    def set(
        self,
        kind: str,
        month_key: str,
        value: object,
        generation: Optional[Generation] = None,
    ) -> None:
        expires_at = self._clock() + self.ttl_secs
        with self._lock:
            if generation is not None and generation != self._current(month_key):
                logger.debug(f"cache_store_skipped: month={month_key} kind={kind}")
                return
            self._entries.setdefault(month_key, {})[kind] = (expires_at, value)

    def invalidate_month(self, month_key: str) -> None:
        with self._lock:
            self._month_generations[month_key] = (
                self._month_generations.get(month_key, 0) + 1
            )
            dropped = self._entries.pop(month_key, None)
        if dropped:
            logger.debug(
                f"cache_invalidated: month={month_key} kinds={sorted(dropped)}"
            )

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()


@lru_cache(maxsize=1)
def get_report_cache() -> ReportCache:
    return InMemoryReportCache()
