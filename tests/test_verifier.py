"""
Integrity verifier decision table.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio

import pytest

from medchain_anchor import canonical
from medchain_anchor.errors import RpcTransient
from medchain_anchor.schemas import Action, Kind, LedgerStatus, Verdict
from support import OTHER_STAFF, anchored, make_anchor, medicine


def test_missing_row_is_absent():
    anchor, _, _ = make_anchor()
    result = asyncio.run(anchor.verify(Kind.MEDICINE, 404))
    assert result.verdict == Verdict.ABSENT


def test_row_never_anchored_is_not_on_chain():
    anchor, store, _ = make_anchor()
    store.put_row(Kind.MEDICINE, medicine())
    result = asyncio.run(anchor.verify(Kind.MEDICINE, 101))
    assert result.verdict == Verdict.NOT_ON_CHAIN
    assert result.stored_hash is None
    assert result.current_hash == canonical.compute_hash(Kind.MEDICINE, medicine())


def test_anchored_row_is_intact():
    async def run():
        anchor, store, _ = make_anchor()
        await anchored(anchor, store, Kind.MEDICINE, medicine())
        return await anchor.verify(Kind.MEDICINE, 101)

    result = asyncio.run(run())
    assert result.verdict == Verdict.INTACT
    assert result.current_hash == result.stored_hash == result.chain_hash
    assert result.tx_hash is not None
    assert result.confirmed_at is not None


def test_stored_hash_without_chain_record_is_not_on_chain():
    async def run():
        anchor, store, _ = make_anchor()
        store.put_row(Kind.MEDICINE, medicine())
        h = canonical.compute_hash(Kind.MEDICINE, medicine())
        ledger_id = await store.begin_anchor(Kind.MEDICINE, 101, h, Action.STORE)
        await store.record_submitted(ledger_id, "0x" + "ab" * 32, OTHER_STAFF)
        await store.record_terminal(ledger_id, LedgerStatus.CONFIRMED, block_number=1, log_index=0)
        return await anchor.verify(Kind.MEDICINE, 101)

    result = asyncio.run(run())
    assert result.verdict == Verdict.NOT_ON_CHAIN
    assert result.stored_hash is not None
    assert result.chain_hash is None


def test_stored_hash_differing_from_chain_is_modified():
    async def run():
        anchor, store, chain = make_anchor()
        store.put_row(Kind.MEDICINE, medicine())
        h = canonical.compute_hash(Kind.MEDICINE, medicine())
        ledger_id = await store.begin_anchor(Kind.MEDICINE, 101, h, Action.STORE)
        await store.record_submitted(ledger_id, "0x" + "ab" * 32, OTHER_STAFF)
        await store.record_terminal(ledger_id, LedgerStatus.CONFIRMED, block_number=1, log_index=0)
        await chain.submit_as(OTHER_STAFF, Kind.MEDICINE, Action.STORE, 101, "0x" + "99" * 32)
        return await anchor.verify(Kind.MEDICINE, 101)

    result = asyncio.run(run())
    assert result.verdict == Verdict.MODIFIED
    assert result.current_hash == result.stored_hash
    assert result.chain_hash == "0x" + "99" * 32


def test_deleted_record_verifies_against_retained_hash():
    async def run():
        anchor, store, _ = make_anchor()
        await anchored(anchor, store, Kind.MEDICINE, medicine())
        await anchor.submit(Kind.MEDICINE, 101, medicine(), Action.DELETE)
        await anchor.pipeline.drain()
        intact = await anchor.verify(Kind.MEDICINE, 101)
        store.update_row(Kind.MEDICINE, 101, name="Paracetamol 650mg Tablet")
        tampered = await anchor.verify(Kind.MEDICINE, 101)
        return intact, tampered, await store.latest_entry(Kind.MEDICINE, 101)

    intact, tampered, latest = asyncio.run(run())
    assert latest.action == Action.DELETE
    assert latest.tombstone is True
    assert intact.verdict == Verdict.INTACT
    assert intact.tombstone is True
    assert tampered.verdict == Verdict.MODIFIED


def test_transport_failure_propagates():
    async def run():
        anchor, store, chain = make_anchor()
        await anchored(anchor, store, Kind.MEDICINE, medicine())
        chain.inject("get_hash", RpcTransient("connection refused"))
        return await anchor.verify(Kind.MEDICINE, 101)

    with pytest.raises(RpcTransient):
        asyncio.run(run())


def test_verify_many_summarises_verdicts():
    async def run():
        anchor, store, _ = make_anchor()
        await anchored(anchor, store, Kind.MEDICINE, medicine(101))
        await anchored(anchor, store, Kind.MEDICINE, medicine(102))
        store.update_row(Kind.MEDICINE, 102, strength="250mg")
        return await anchor.verify_many(Kind.MEDICINE, [101, 102, 103])

    report = asyncio.run(run())
    assert report["kind"] == "MEDICINE"
    assert report["total"] == 3
    assert report["summary"]["INTACT"] == 1
    assert report["summary"]["MODIFIED"] == 1
    assert report["summary"]["ABSENT"] == 1
    assert [r.entity_id for r in report["results"]] == [101, 102, 103]
