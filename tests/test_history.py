"""
History aggregator: ordering, cap, TTL cache, singleflight and invalidation.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio

from medchain_anchor.history import CacheEntry, HistoryAggregator
from medchain_anchor.schemas import Action, Kind
from medchain_anchor.store import MemoryAnchorStore
from support import OTHER_STAFF, anchored, make_anchor, medicine, seed_confirmed as seed


class CountingStore:
    """Wraps a store and counts history_rows calls, optionally slowing them down."""

    def __init__(self, store, delay=0.0):
        self.store = store
        self.delay = delay
        self.calls = 0

    async def history_rows(self, **filters):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return await self.store.history_rows(**filters)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_cache_entry_expiry():
    entry = CacheEntry(data=None, cached_at=100.0, ttl_seconds=300)
    assert not entry.is_expired(399.9)
    assert entry.is_expired(400.0)


def test_history_is_newest_first_with_fields():
    async def run():
        store = MemoryAnchorStore()
        await seed(store, 8)
        return await HistoryAggregator(store).history()

    page = asyncio.run(run())
    timestamps = [e.timestamp for e in page.entries]
    assert timestamps == sorted(timestamps, reverse=True)
    first = page.entries[0]
    assert first.kind == Kind.REMOVAL
    assert first.id == 1007
    assert first.added_by == OTHER_STAFF
    assert first.exists is True
    assert first.model_dump(by_alias=True)["addedBy"] == OTHER_STAFF
    assert page.truncated is False


def test_history_cap_sets_truncated():
    async def run():
        store = MemoryAnchorStore()
        await seed(store, 8)
        return await HistoryAggregator(store, max_entries=5).history()

    page = asyncio.run(run())
    assert len(page.entries) == 5
    assert page.truncated is True
    assert sum(page.counts.values()) == 8


def test_history_filters():
    async def run():
        store = MemoryAnchorStore()
        await seed(store, 8)
        history = HistoryAggregator(store)
        by_kind = await history.history(kind=Kind.STOCK)
        by_id = await history.history(kind="MEDICINE", entity_id=1004)
        recent = await history.history(since=1_736_467_200 + 6)
        return by_kind, by_id, recent

    by_kind, by_id, recent = asyncio.run(run())
    assert {e.kind for e in by_kind.entries} == {Kind.STOCK}
    assert by_kind.counts == {"STOCK": 2}
    assert [e.id for e in by_id.entries] == [1004]
    assert [e.id for e in recent.entries] == [1007, 1006]


def test_deleted_entities_show_as_not_existing():
    async def run():
        anchor, store, _ = make_anchor()
        await anchored(anchor, store, Kind.MEDICINE, medicine())
        await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.DELETE)
        await anchor.pipeline.drain()
        return await anchor.history(exists=False)

    page = asyncio.run(run())
    assert len(page.entries) == 1
    assert page.entries[0].exists is False


def test_second_call_within_ttl_is_cached():
    async def run():
        counting = CountingStore(MemoryAnchorStore())
        await seed(counting.store, 4)
        clock = FakeClock()
        history = HistoryAggregator(counting, ttl_seconds=300, clock=clock)
        first = await history.history()
        clock.now = 299
        second = await history.history()
        clock.now = 301
        third = await history.history()
        return first, second, third, counting.calls

    first, second, third, calls = asyncio.run(run())
    assert first.cached is False
    assert second.cached is True
    assert second.entries == first.entries
    assert third.cached is False
    assert calls == 2


def test_concurrent_misses_share_one_refresh():
    async def run():
        counting = CountingStore(MemoryAnchorStore(), delay=0.02)
        await seed(counting.store, 4)
        history = HistoryAggregator(counting)
        pages = await asyncio.gather(*[history.history() for _ in range(5)])
        return pages, counting.calls

    pages, calls = asyncio.run(run())
    assert calls == 1
    assert all(p.entries == pages[0].entries for p in pages)


def test_invalidate_drops_cache():
    async def run():
        counting = CountingStore(MemoryAnchorStore())
        await seed(counting.store, 4)
        history = HistoryAggregator(counting)
        await history.history()
        history.invalidate()
        page = await history.history()
        return page, counting.calls

    page, calls = asyncio.run(run())
    assert page.cached is False
    assert calls == 2


def test_refresh_started_before_invalidation_is_not_cached():
    async def run():
        counting = CountingStore(MemoryAnchorStore(), delay=0.02)
        await seed(counting.store, 4)
        history = HistoryAggregator(counting)
        pending = asyncio.create_task(history.history())
        await asyncio.sleep(0.005)
        history.invalidate()
        await pending
        await history.history()
        return counting.calls

    assert asyncio.run(run()) == 2


def test_terminal_transition_invalidates_facade_cache():
    async def run():
        anchor, store, _ = make_anchor()
        before = await anchor.history()
        await anchored(anchor, store, Kind.MEDICINE, medicine())
        after = await anchor.history()
        return before, after

    before, after = asyncio.run(run())
    assert before.entries == []
    assert [e.id for e in after.entries] == [101]
    assert after.cached is False
