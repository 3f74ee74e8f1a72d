"""
Submission pipeline against the stub chain: confirm, revert, missing event,
transient retries, receipt timeout + sweep, cancellation, ledger-only kinds.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio

import pytest

from medchain_anchor import canonical
from medchain_anchor.chain.stub import StubChain
from medchain_anchor.errors import ConcurrentAnchor, ConfigurationError, RpcTransient
from medchain_anchor.pipeline import Backoff
from medchain_anchor.schemas import Action, AnchorState, Kind, LedgerStatus, Origin, Verdict
from support import anchored, make_anchor, medicine, stock, user


def test_backoff_delays():
    delays = list(Backoff(initial=1, factor=2, cap=60, attempts=8).delays())
    assert delays == [1, 2, 4, 8, 16, 32, 60]


def test_store_is_confirmed():
    async def run():
        anchor, store, chain = make_anchor()
        ledger_id = await anchored(anchor, store, Kind.STOCK, stock())
        return (await store.get_entry(ledger_id), await store.read_integrity(Kind.STOCK, 7), chain)

    entry, record, chain = asyncio.run(run())
    assert entry.status == LedgerStatus.CONFIRMED
    assert entry.block_number == 1
    assert entry.gas_used == 52_000
    assert entry.from_address == chain.signer_address
    assert entry.event_payload["event"] == "StockHashStored"
    assert record.anchor_state == AnchorState.CONFIRMED
    assert record.content_hash == entry.submitted_hash
    assert record.tx_hash == entry.tx_hash


def test_resubmitting_the_same_row_is_a_noop():
    async def run():
        anchor, store, chain = make_anchor()
        store.put_row(Kind.MEDICINE, medicine())
        first = await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.STORE)
        while_pending = await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.STORE)
        await anchor.pipeline.drain()
        after_confirm = await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.STORE)
        await anchor.pipeline.drain()
        return first, while_pending, after_confirm, await store.entries_for(Kind.MEDICINE, 101), chain

    first, while_pending, after_confirm, entries, chain = asyncio.run(run())
    assert first == while_pending == after_confirm
    assert len(entries) == 1
    assert entries[0].status == LedgerStatus.CONFIRMED
    assert chain.calls["prepare"] == 1


def test_different_hash_while_in_flight_is_rejected():
    async def run():
        anchor, store, _ = make_anchor()
        store.put_row(Kind.MEDICINE, medicine())
        await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.STORE)
        await anchor.submit(Kind.MEDICINE, 101, medicine(strength="250mg"), Action.UPDATE)

    with pytest.raises(ConcurrentAnchor):
        asyncio.run(run())


def test_revert_marks_entry_failed():
    async def run():
        anchor, store, chain = make_anchor()
        chain.authorized = False
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        return await store.get_entry(ledger_id), await store.read_integrity(Kind.MEDICINE, 101)

    entry, record = asyncio.run(run())
    assert entry.status == LedgerStatus.FAILED
    assert entry.error.startswith("AccessControl: account ")
    assert entry.tx_hash is None
    assert record.anchor_state == AnchorState.FAILED
    assert record.content_hash is None


def test_receipt_without_event_is_failed():
    async def run():
        anchor, store, chain = make_anchor()
        chain.drop_events = True
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        return await store.get_entry(ledger_id)

    entry = asyncio.run(run())
    assert entry.status == LedgerStatus.FAILED
    assert entry.tx_hash is not None
    assert entry.error.startswith("EVENT_MISSING")


def test_transient_errors_are_retried():
    async def run():
        anchor, store, chain = make_anchor()
        chain.inject("prepare", RpcTransient("HTTP 503"), times=2)
        chain.inject("await_receipt", RpcTransient("connection reset"), times=1)
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        return await store.get_entry(ledger_id), chain

    entry, chain = asyncio.run(run())
    assert entry.status == LedgerStatus.CONFIRMED
    assert chain.calls["prepare"] == 3


def test_exhausted_retries_are_permanent():
    async def run():
        anchor, store, chain = make_anchor(retry_attempts=3)
        chain.inject("prepare", RpcTransient("HTTP 429"), times=3)
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        return await store.get_entry(ledger_id), await store.read_integrity(Kind.MEDICINE, 101)

    entry, record = asyncio.run(run())
    assert entry.status == LedgerStatus.FAILED
    assert entry.error.startswith("retries exhausted after 3 attempts")
    assert record.anchor_state == AnchorState.FAILED


def test_receipt_timeout_stays_submitted_until_swept():
    async def run():
        anchor, store, chain = make_anchor(chain=StubChain(automine=False))
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        waiting = await store.get_entry(ledger_id)
        chain.mine()
        swept = await anchor.pipeline.sweep()
        await anchor.pipeline.drain()
        return waiting, swept, await store.get_entry(ledger_id), chain

    waiting, swept, entry, chain = asyncio.run(run())
    assert waiting.status == LedgerStatus.SUBMITTED
    assert swept == 1
    assert entry.status == LedgerStatus.CONFIRMED
    assert chain.calls["prepare"] == 1
    assert chain.broadcasts(entry.tx_hash) == 1


def test_cancel_before_broadcast():
    async def run():
        anchor, store, chain = make_anchor()
        store.put_row(Kind.MEDICINE, medicine())
        ledger_id = await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.STORE)
        cancelled = await anchor.cancel(ledger_id)
        await anchor.pipeline.drain()
        return cancelled, await store.get_entry(ledger_id), chain

    cancelled, entry, chain = asyncio.run(run())
    assert cancelled is True
    assert entry.status == LedgerStatus.FAILED
    assert entry.error == "cancelled"
    assert chain.calls["prepare"] == 0


def test_cancel_after_broadcast_is_refused():
    async def run():
        anchor, store, _ = make_anchor()
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        return await anchor.cancel(ledger_id), await store.get_entry(ledger_id)

    cancelled, entry = asyncio.run(run())
    assert cancelled is False
    assert entry.status == LedgerStatus.CONFIRMED


def test_recover_requeues_in_flight_entries():
    async def run():
        chain = StubChain(automine=False)
        anchor, store, _ = make_anchor(chain=chain)
        submitted = await anchored(anchor, store, Kind.STOCK, stock())
        # crashed before broadcast: only the PENDING entry exists
        store.put_row(Kind.MEDICINE, medicine())
        pending = await store.begin_anchor(
            Kind.MEDICINE, 101, canonical.compute_hash(Kind.MEDICINE, medicine()), Action.STORE)
        before = [(await store.get_entry(i)).status for i in (submitted, pending)]

        chain.automine = True
        chain.mine()
        restarted, _, _ = make_anchor(store=store, chain=chain)
        queued = await restarted.pipeline.recover()
        await restarted.pipeline.drain()
        after = [await store.get_entry(i) for i in (submitted, pending)]
        return before, queued, after

    before, queued, after = asyncio.run(run())
    assert before == [LedgerStatus.SUBMITTED, LedgerStatus.PENDING]
    assert queued == 2
    assert [e.status for e in after] == [LedgerStatus.CONFIRMED, LedgerStatus.CONFIRMED]
    assert after[0].block_number == 1
    assert after[1].block_number == 2


def test_ledger_only_kind_is_confirmed_without_chain():
    async def run():
        anchor, store, chain = make_anchor()
        ledger_id = await anchored(anchor, store, Kind.USER, user())
        entry = await store.get_entry(ledger_id)
        record = await store.read_integrity(Kind.USER, 3)
        result = await anchor.verify(Kind.USER, 3)
        return entry, record, result, chain

    entry, record, result, chain = asyncio.run(run())
    assert entry.status == LedgerStatus.CONFIRMED
    assert entry.origin == Origin.LEDGER_ONLY
    assert entry.block_number is None
    assert entry.tx_hash is None
    assert record.anchor_state == AnchorState.CONFIRMED
    assert record.content_hash == entry.submitted_hash
    assert result.verdict == Verdict.NOT_ON_CHAIN
    assert "ledger only" in result.reason
    assert chain.calls["prepare"] == 0


def test_submit_disabled_without_chain():
    async def run():
        from medchain_anchor.anchor import Anchor
        from medchain_anchor.store import MemoryAnchorStore
        store = MemoryAnchorStore()
        store.put_row(Kind.MEDICINE, medicine())
        anchor = Anchor(store, None)
        return await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.STORE)

    with pytest.raises(ConfigurationError):
        asyncio.run(run())


class LostReplyChain(StubChain):
    """The node accepts the first send but the reply never arrives."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.replies_lost = 0

    async def broadcast(self, signed):
        tx_hash = await super().broadcast(signed)
        if self.replies_lost == 0:
            self.replies_lost += 1
            raise RpcTransient("ReadTimeout: reply lost")
        return tx_hash


def test_lost_send_reply_resends_the_same_transaction():
    async def run():
        chain = LostReplyChain()
        anchor, store, _ = make_anchor(chain=chain)
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        return await store.get_entry(ledger_id), await store.entries_for(Kind.MEDICINE, 101), chain

    entry, entries, chain = asyncio.run(run())
    assert entry.status == LedgerStatus.CONFIRMED
    assert len(entries) == 1
    assert chain.broadcasts(entry.tx_hash) == 1
    assert chain.calls["prepare"] == 1
    assert chain.calls["broadcast"] == 2


def test_unacknowledged_send_stays_submitted_and_sweep_resends_it():
    async def run():
        anchor, store, chain = make_anchor()
        chain.inject("broadcast", RpcTransient("HTTP 502"), times=4)
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        waiting = await store.get_entry(ledger_id)
        swept = await anchor.pipeline.sweep()
        await anchor.pipeline.drain()
        return waiting, swept, await store.get_entry(ledger_id), chain

    waiting, swept, entry, chain = asyncio.run(run())
    assert waiting.status == LedgerStatus.SUBMITTED
    assert waiting.raw_tx.startswith("stub:")
    assert swept == 1
    assert entry.status == LedgerStatus.CONFIRMED
    assert entry.tx_hash == waiting.tx_hash
    assert chain.calls["prepare"] == 1
    assert chain.broadcasts(entry.tx_hash) == 1


def test_orphan_lookup_transients_are_retried():
    async def run():
        anchor, store, chain = make_anchor(finality_depth=3)
        await anchored(anchor, store, Kind.MEDICINE, medicine())
        chain.mine(3)
        chain.reorg(4)
        chain.inject("get_hash", RpcTransient("HTTP 503"), times=1)
        await anchor.ingester.poll_all()
        await anchor.pipeline.drain()
        return await store.entries_for(Kind.MEDICINE, 101)

    orphaned, fresh = asyncio.run(run())
    assert orphaned.status == LedgerStatus.ORPHANED
    assert fresh.action == Action.STORE
    assert fresh.status == LedgerStatus.CONFIRMED


def test_orphan_left_by_exhausted_lookup_is_resubmitted_by_sweep():
    async def run():
        anchor, store, chain = make_anchor(finality_depth=3)
        ledger_id = await anchored(anchor, store, Kind.MEDICINE, medicine())
        chain.mine(3)
        chain.reorg(4)
        chain.inject("get_hash", RpcTransient("HTTP 503"), times=4)
        await anchor.ingester.poll_all()
        stranded = await store.entries_for(Kind.MEDICINE, 101)
        swept = await anchor.pipeline.sweep()
        await anchor.pipeline.drain()
        return ledger_id, stranded, swept, await store.entries_for(Kind.MEDICINE, 101), store

    ledger_id, stranded, swept, entries, store = asyncio.run(run())
    assert [(e.ledger_id, e.status) for e in stranded] == [(ledger_id, LedgerStatus.ORPHANED)]
    assert swept == 1
    assert len(entries) == 2
    assert entries[1].action == Action.STORE
    assert entries[1].status == LedgerStatus.CONFIRMED
    assert asyncio.run(store.stranded_orphans()) == []
