"""Keyed in-memory cache shared by the poller and the optimistic update engine."""
from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from reportsync.core.logging import logger

CacheKey = Tuple[Any, ...]
InvalidationListener = Callable[[CacheKey], None]

REPORTS = ("reports",)
REPORT_LISTS = ("reports", "list")
REPORT_STATISTICS = ("reports", "statistics")
DASHBOARD = ("dashboard",)


def list_key(filters_key: str) -> CacheKey:
    return REPORT_LISTS + (filters_key,)


def report_key(report_id: str) -> CacheKey:
    return REPORTS + ("detail", report_id)


def statistics_key(filters_key: str) -> CacheKey:
    return REPORT_STATISTICS + (filters_key,)


def _matches(key: CacheKey, prefix: CacheKey) -> bool:
    return key[: len(prefix)] == prefix


@dataclass
class CacheEntry:
    value: Any
    updated_at: float = field(default_factory=time.monotonic)
    stale: bool = False


class QueryCache:
    """Whole-value replacement cache keyed by tuples, with prefix invalidation.

    Values are never mutated in place: writers build a new value (pydantic
    ``model_copy``) and replace the entry, so readers on the event loop always
    observe a complete value.
    """

    def __init__(self, max_size: Optional[int] = 512) -> None:
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._listeners: List[InvalidationListener] = []
        self._max_size = max_size

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def get(self, key: CacheKey) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value)
        self._entries.move_to_end(key)
        self._evict()

    def remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def keys(self, prefix: CacheKey = ()) -> List[CacheKey]:
        return [key for key in self._entries if _matches(key, prefix)]

    def items(self, prefix: CacheKey = ()) -> Dict[CacheKey, Any]:
        return {key: entry.value for key, entry in self._entries.items() if _matches(key, prefix)}

    def update_matching(self, prefix: CacheKey, updater: Callable[[Any], Any]) -> int:
        """Replace every value under ``prefix`` with ``updater(value)``.

        Returns the number of entries whose value changed identity.
        """
        changed = 0
        for key in self.keys(prefix):
            entry = self._entries[key]
            new_value = updater(entry.value)
            if new_value is entry.value:
                continue
            self._entries[key] = CacheEntry(value=new_value, stale=entry.stale)
            changed += 1
        return changed

    def is_stale(self, key: CacheKey, max_age: Optional[float] = None) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.stale:
            return True
        if max_age is None:
            return False
        return (time.monotonic() - entry.updated_at) > max_age

    def invalidate(self, prefix: CacheKey) -> List[CacheKey]:
        """Mark entries under ``prefix`` stale and notify listeners.

        Listeners are notified even when no entry matches, so active queries
        that have not landed yet still refetch.
        """
        matched = self.keys(prefix)
        for key in matched:
            self._entries[key].stale = True
        for listener in list(self._listeners):
            try:
                listener(prefix)
            except Exception as exc:
                logger.error("Cache invalidation listener failed", prefix=str(prefix), error=str(exc))
        return matched

    def subscribe(self, listener: InvalidationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _evict(self) -> None:
        if self._max_size is None:
            return
        while len(self._entries) > self._max_size:
            key, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cache entry", key=str(key))
