"""
Shared builders for the test-suite: in-memory store, stub chain, small timeouts.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from medchain_anchor.anchor import Anchor
from medchain_anchor.chain.stub import StubChain
from medchain_anchor.config import Settings
from medchain_anchor.schemas import Action, Kind, LedgerStatus
from medchain_anchor.store import MemoryAnchorStore

OTHER_STAFF = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"


def make_settings(**overrides) -> Settings:
    values = dict(
        chain_backend="stub",
        store_backend="memory",
        receipt_deadline=0.2,
        receipt_poll_interval=0.01,
        retry_initial=0.0,
        retry_attempts=4,
        ingest_poll_interval=0.01,
    )
    values.update(overrides)
    return Settings(**values)


async def no_sleep(_delay):
    return None


def make_anchor(chain=None, store=None, **overrides):
    settings = make_settings(**overrides)
    store = store or MemoryAnchorStore()
    chain = chain or StubChain(poll_interval=0.01)
    return Anchor(store, chain, settings, sleep=no_sleep), store, chain


def medicine(medicine_id=101, **changes) -> dict:
    row = {
        "medicine_id": medicine_id,
        "name": "Paracetamol 500mg Tablet",
        "strength": "500mg",
        "barangay": "SAN_JOSE",
        "created_at": "2025-01-10T00:00:00Z",
    }
    row.update(changes)
    return row


def stock(stock_id=7, **changes) -> dict:
    row = {
        "stock_id": stock_id,
        "medicine_id": 101,
        "batch_number": "PCM-2025-001",
        "quantity": 500,
        "unit_cost": "1.25",
        "date_received": "2025-01-12T08:30:00Z",
        "expiry_date": "2027-01-31T00:00:00Z",
        "barangay": "SAN_JOSE",
    }
    row.update(changes)
    return row


def user(user_id=3, **changes) -> dict:
    row = {
        "user_id": user_id,
        "wallet_address": OTHER_STAFF,
        "full_name": "Maria Santos",
        "role": "STAFF",
        "assigned_barangay": "SAN_JOSE",
    }
    row.update(changes)
    return row


async def anchored(anchor, store, kind, row, action="STORE"):
    """Put the row, submit it and run the pipeline until it rests. Returns the ledger id."""
    entity_id = store.put_row(kind, row)
    ledger_id = await anchor.submit(Kind(kind), entity_id, row, action)
    await anchor.pipeline.drain()
    return ledger_id


ID_FIELDS = {
    Kind.MEDICINE: "medicine_id",
    Kind.STOCK: "stock_id",
    Kind.RELEASE: "release_id",
    Kind.REMOVAL: "removal_id",
}


async def seed_confirmed(store, count, kinds=tuple(ID_FIELDS)):
    """`count` confirmed ledger entries spread over `kinds`; entry i sits at block i+1."""
    for i in range(count):
        kind = kinds[i % len(kinds)]
        entity_id = 1000 + i
        store.put_row(kind, {ID_FIELDS[kind]: entity_id})
        ledger_id = await store.begin_anchor(kind, entity_id, "0x" + f"{i + 1:064x}", Action.STORE)
        await store.record_submitted(ledger_id, "0x" + f"{i + 1:064x}", OTHER_STAFF)
        await store.record_terminal(ledger_id, LedgerStatus.CONFIRMED, block_number=i + 1,
                                    log_index=0, event_payload={"timestamp": 1_736_467_200 + i})
