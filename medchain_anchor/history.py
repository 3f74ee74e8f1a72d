"""
history.py - History feed with a TTL cache.

The feed is the union of confirmed ledger entries and integrity rows that
no ledger entry represents, newest first, capped at MAX_HISTORY_ENTRIES with
an explicit `truncated` flag. It is DB-authoritative: the chain is not read.

Cache rules:
  - one entry per filter combination, HISTORY_CACHE_TTL seconds
  - concurrent misses on the same key share one refresh (singleflight)
  - invalidate() drops everything; a refresh that started before the
    invalidation is returned to its callers but not cached
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .schemas import HistoryPage, Kind, utc_now

log = logging.getLogger("anchor.history")


@dataclass
class CacheEntry:
    data: Any
    cached_at: float
    ttl_seconds: float = 300.0

    def is_expired(self, now: float) -> bool:
        return now >= self.cached_at + self.ttl_seconds


class HistoryAggregator:

    def __init__(self, store, ttl_seconds: float = 300.0, max_entries: int = 10_000,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._cache: dict[tuple, CacheEntry] = {}
        self._inflight: dict[tuple, asyncio.Future] = {}
        self._generation = 0

    @staticmethod
    def cache_key(kind=None, entity_id=None, exists=None, since=None, limit=None) -> tuple:
        return (Kind(kind).value if kind is not None else None, entity_id, exists,
                since.isoformat() if hasattr(since, "isoformat") else since, limit)

    def invalidate(self, *_):
        """Drop every cached page. Accepts (and ignores) a ledger entry so it can be a callback."""
        self._generation += 1
        if self._cache:
            log.debug("history cache invalidated (%d entries)", len(self._cache))
        self._cache.clear()

    async def _load(self, kind, entity_id, exists, since, limit) -> HistoryPage:
        entries, counts = await self.store.history_rows(
            kind=kind, entity_id=entity_id, exists=exists, since=since, limit=limit)
        total = sum(counts.values())
        return HistoryPage(entries=entries, truncated=total > len(entries), counts=counts,
                           generated_at=utc_now())

    async def history(self, kind=None, entity_id=None, exists=None, since=None,
                      limit: Optional[int] = None) -> HistoryPage:
        limit = min(limit or self.max_entries, self.max_entries)
        key = self.cache_key(kind, entity_id, exists, since, limit)

        cached = self._cache.get(key)
        if cached is not None:
            if not cached.is_expired(self._clock()):
                return cached.data.model_copy(update={"cached": True})
            del self._cache[key]

        waiting = self._inflight.get(key)
        if waiting is not None:
            return await asyncio.shield(waiting)

        generation = self._generation
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            page = await self._load(kind, entity_id, exists, since, limit)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()   # retrieved here so an unawaited future does not warn
            raise
        else:
            future.set_result(page)
            if generation == self._generation:
                self._cache[key] = CacheEntry(page, self._clock(), self.ttl_seconds)
            return page
        finally:
            self._inflight.pop(key, None)
