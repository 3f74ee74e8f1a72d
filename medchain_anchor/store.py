"""
store.py - Anchor Store contract and the in-process backend.

The store owns two things:
  - the integrity columns on every domain row
    (content_hash, tx_hash, anchor_state, last_synced_at)
  - the anchor ledger and the ingester watermarks

Every public coroutine is one unit of work. Both backends share the
transition rules below so the in-memory store used by tests and the
PostgreSQL store (db.py) cannot drift apart.

Rules:
  - at most one PENDING/SUBMITTED ledger entry per (kind, entity_id)
  - content_hash is the hash of the latest CONFIRMED non-delete entry,
    ordered by (block_number, log_index, ledger_id)
  - a DELETE never changes content_hash; its entry carries tombstone=True
  - FAILED leaves content_hash alone
  - ORPHANED falls back to the previous confirmed hash if the orphaned one
    was current
  - a confirmed (tx_hash, kind, entity_id, action) is recorded once
"""
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from . import canonical
from .errors import ConcurrentAnchor, NotFound, Reorganized
from .schemas import (
    IN_FLIGHT, TERMINAL, Action, AnchorState, HistoryEntry, IntegrityRecord, Kind,
    LedgerEntry, LedgerStatus, Origin, hex32, lower_address, utc_now,
)

log = logging.getLogger("anchor.store")

WatermarkKey = tuple[str, str]   # (contract_address, event_name)


@dataclass
class Watermark:
    contract_address: str
    event_name: str
    last_block: int
    last_block_hash: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> WatermarkKey:
        return (self.contract_address, self.event_name)


@dataclass
class PageResult:
    """What one ingester page did to the ledger."""
    confirmed: list = field(default_factory=list)   # pipeline entries confirmed by the event
    external:  list = field(default_factory=list)   # entries created for unknown events
    orphaned:  list = field(default_factory=list)   # confirmed entries whose event vanished
    coalesced: int = 0                               # events already recorded
    skipped:   int = 0                               # events that failed to apply

    @property
    def terminal(self) -> list:
        return self.confirmed + self.external + self.orphaned


def _order(entry: LedgerEntry) -> tuple:
    return entry.position + (entry.ledger_id,)


def _short(h: Optional[str]) -> str:
    return h[:18] if h else "-"


def reorg_error(detail: str = "block reorganized") -> str:
    exc = Reorganized(detail)
    return f"{exc.code}: {exc}"


#  Transition rules shared by both backends

def terminal_transition(entry: LedgerEntry, status, *, block_number=None, gas_used=None,
                        event_payload=None, block_hash=None, log_index=None,
                        error=None, now=None) -> Optional[LedgerEntry]:
    """Return the entry after moving it to a terminal status, or None for a no-op."""
    status = LedgerStatus(status)
    if status not in TERMINAL:
        raise ValueError(f"{status} is not a terminal status")
    now = now or utc_now()

    if entry.status == status:
        if status != LedgerStatus.CONFIRMED or (
                entry.block_number == block_number
                and (block_hash is None or entry.block_hash == hex32(block_hash))):
            return None
        log.info("ledger %s re-included at block %s %s (was %s %s)", entry.ledger_id,
                 block_number, _short(hex32(block_hash)), entry.block_number, _short(entry.block_hash))
    elif entry.status in TERMINAL and not (
            entry.status == LedgerStatus.CONFIRMED and status == LedgerStatus.ORPHANED):
        log.warning("ledger %s: ignoring %s -> %s", entry.ledger_id, entry.status.value, status.value)
        return None

    update: dict[str, Any] = {"status": status}
    if status == LedgerStatus.CONFIRMED:
        update.update(
            block_number=block_number,
            block_hash=hex32(block_hash),
            log_index=log_index,
            gas_used=gas_used if gas_used is not None else entry.gas_used,
            tombstone=entry.action == Action.DELETE,
            error=None,
            confirmed_at=entry.confirmed_at or now,
        )
        if event_payload is not None:
            update["event_payload"] = dict(event_payload)
    elif status == LedgerStatus.FAILED:
        update["error"] = error or entry.error or "failed"
    else:
        update["error"] = error or reorg_error()
    return entry.model_copy(update=update)


def integrity_after(record: IntegrityRecord, entry: LedgerEntry, confirmed: Iterable[LedgerEntry],
                    other_in_flight: Optional[LedgerEntry], now=None) -> IntegrityRecord:
    """Integrity columns after `entry` reached its (new) terminal status.

    `confirmed` are the entity's CONFIRMED entries after the transition.
    """
    now = now or utc_now()
    confirmed = list(confirmed)
    changes: dict[str, Any] = {}

    if entry.status == LedgerStatus.CONFIRMED:
        latest = max(confirmed, key=_order)
        if latest.ledger_id == entry.ledger_id:
            if entry.action != Action.DELETE:
                changes["content_hash"] = entry.submitted_hash
            changes["tx_hash"] = entry.tx_hash
            changes["last_synced_at"] = now
        state = AnchorState.CONFIRMED
    elif entry.status == LedgerStatus.FAILED:
        state = AnchorState.FAILED
    else:
        if entry.action != Action.DELETE and record.content_hash == entry.submitted_hash:
            previous = [e for e in confirmed if e.action != Action.DELETE]
            fallback = max(previous, key=_order) if previous else None
            changes["content_hash"] = fallback.submitted_hash if fallback else None
            changes["tx_hash"] = fallback.tx_hash if fallback else None
            changes["last_synced_at"] = now
        state = AnchorState.ORPHANED

    if other_in_flight is None:
        changes["anchor_state"] = state
    return record.model_copy(update=changes)


def history_entry(entry: LedgerEntry) -> HistoryEntry:
    ts = entry.event_payload.get("timestamp") if entry.event_payload else None
    if not ts:
        ts = canonical.epoch_seconds("confirmed_at", entry.confirmed_at or entry.created_at)
    return HistoryEntry(
        kind=entry.kind,
        id=entry.entity_id,
        hash=entry.submitted_hash,
        added_by=entry.from_address,
        timestamp=int(ts),
        exists=not entry.tombstone,
        tx_hash=entry.tx_hash,
    )


def row_history_entry(record: IntegrityRecord) -> HistoryEntry:
    ts = canonical.epoch_seconds("last_synced_at", record.last_synced_at) if record.last_synced_at else 0
    return HistoryEntry(kind=record.kind, id=record.entity_id, hash=record.content_hash,
                        timestamp=ts, exists=True, tx_hash=record.tx_hash)


def select_history(entries: list[HistoryEntry], *, kind=None, entity_id=None, exists=None,
                   since=None, limit: int = 10_000) -> tuple[list[HistoryEntry], dict[str, int]]:
    """Filter, order newest-first and cap. Counts cover every match, not just the cap."""
    if since is not None and not isinstance(since, int):
        since = canonical.epoch_seconds("since", since)
    kind = Kind(kind) if kind is not None else None
    matched = [
        e for e in entries
        if (kind is None or e.kind == kind)
        and (entity_id is None or e.id == entity_id)
        and (exists is None or e.exists == exists)
        and (since is None or e.timestamp >= since)
    ]
    matched.sort(key=lambda e: (e.timestamp, e.kind.value, e.id, e.tx_hash or ""), reverse=True)
    counts: dict[str, int] = {}
    for e in matched:
        counts[e.kind.value] = counts.get(e.kind.value, 0) + 1
    return matched[:limit], counts


class AnchorStore:
    """Interface of the Anchor Store. See MemoryAnchorStore and db.PgAnchorStore."""

    async def read_integrity(self, kind, entity_id: int) -> IntegrityRecord:
        raise NotImplementedError

    async def read_row(self, kind, entity_id: int) -> Optional[dict]:
        raise NotImplementedError

    async def begin_anchor(self, kind, entity_id: int, proposed_hash: Optional[str], action,
                           origin=Origin.PIPELINE) -> int:
        raise NotImplementedError

    async def record_submitted(self, ledger_id: int, tx_hash: str, from_address: str,
                               raw_tx: Optional[str] = None) -> LedgerEntry:
        raise NotImplementedError

    async def record_terminal(self, ledger_id: int, status, block_number=None, gas_used=None,
                              event_payload=None, block_hash=None, log_index=None,
                              error=None) -> LedgerEntry:
        raise NotImplementedError

    async def get_entry(self, ledger_id: int) -> LedgerEntry:
        raise NotImplementedError

    async def latest_entry(self, kind, entity_id: int, status=None) -> Optional[LedgerEntry]:
        raise NotImplementedError

    async def entries_for(self, kind, entity_id: int) -> list[LedgerEntry]:
        raise NotImplementedError

    async def in_flight(self) -> list[LedgerEntry]:
        raise NotImplementedError

    async def stranded_orphans(self) -> list[LedgerEntry]:
        """ORPHANED entries that are still the latest entry of their entity."""
        raise NotImplementedError

    async def find_by_tx(self, tx_hash: str, kind, entity_id: int, action) -> Optional[LedgerEntry]:
        raise NotImplementedError

    async def record_external(self, event) -> Optional[LedgerEntry]:
        raise NotImplementedError

    async def confirmed_in_range(self, kind, action, from_block: int,
                                 to_block: Optional[int] = None) -> list[LedgerEntry]:
        raise NotImplementedError

    async def apply_event_page(self, key: WatermarkKey, kind, action, from_block: int,
                               to_block: int, to_block_hash: Optional[str],
                               events: list) -> PageResult:
        raise NotImplementedError

    async def rewind_watermark(self, key: WatermarkKey, to_block: int,
                               to_block_hash: Optional[str], orphan_ids: list[int]) -> list[LedgerEntry]:
        raise NotImplementedError

    async def get_watermark(self, key: WatermarkKey) -> Optional[Watermark]:
        raise NotImplementedError

    async def history_rows(self, kind=None, entity_id=None, exists=None, since=None,
                           limit: int = 10_000) -> tuple[list[HistoryEntry], dict[str, int]]:
        raise NotImplementedError

    async def close(self):
        pass


class MemoryAnchorStore(AnchorStore):
    """In-process store. One asyncio.Lock is the unit of work."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._rows: dict[tuple[Kind, int], dict] = {}
        self._integrity: dict[tuple[Kind, int], IntegrityRecord] = {}
        self._ledger: dict[int, LedgerEntry] = {}
        self._watermarks: dict[WatermarkKey, Watermark] = {}
        self._next_id = 1

    #  Collaborator side (the CRUD services own these rows)

    def put_row(self, kind, row: dict) -> int:
        """Insert or replace a domain row. Integrity columns survive a replace."""
        kind = Kind(kind)
        entity_id = canonical.entity_id(kind, row)
        if entity_id is None:
            raise ValueError(f"{kind.value} row has no {canonical.layout(kind).id_field}")
        self._rows[(kind, entity_id)] = dict(row)
        self._integrity.setdefault((kind, entity_id), IntegrityRecord(kind=kind, entity_id=entity_id))
        return entity_id

    def update_row(self, kind, entity_id: int, **changes):
        """Mutate a row directly, bypassing the anchor (what a tamperer does)."""
        self._rows[(Kind(kind), entity_id)].update(changes)

    def delete_row(self, kind, entity_id: int):
        self._rows.pop((Kind(kind), entity_id), None)
        self._integrity.pop((Kind(kind), entity_id), None)

    #  Internals (call with the lock held)

    def _entry(self, ledger_id: int) -> LedgerEntry:
        try:
            return self._ledger[ledger_id]
        except KeyError:
            raise NotFound(f"ledger entry {ledger_id} not found")

    def _for_entity(self, kind: Kind, entity_id: int) -> list[LedgerEntry]:
        return [e for e in self._ledger.values() if e.kind == kind and e.entity_id == entity_id]

    def _in_flight_for(self, kind: Kind, entity_id: int, exclude: Optional[int] = None):
        for e in self._for_entity(kind, entity_id):
            if e.status in IN_FLIGHT and e.ledger_id != exclude:
                return e
        return None

    def _insert(self, **values) -> LedgerEntry:
        entry = LedgerEntry(ledger_id=self._next_id, **values)
        self._next_id += 1
        self._ledger[entry.ledger_id] = entry
        return entry

    def _settle_row(self, entry: LedgerEntry):
        key = (entry.kind, entry.entity_id)
        record = self._integrity.get(key)
        if record is None:
            return
        confirmed = [e for e in self._for_entity(*key) if e.status == LedgerStatus.CONFIRMED]
        other = self._in_flight_for(entry.kind, entry.entity_id, exclude=entry.ledger_id)
        self._integrity[key] = integrity_after(record, entry, confirmed, other)

    def _terminal(self, ledger_id: int, status, **kwargs) -> tuple[LedgerEntry, bool]:
        entry = self._entry(ledger_id)
        updated = terminal_transition(entry, status, **kwargs)
        if updated is None:
            return entry, False
        self._ledger[ledger_id] = updated
        self._settle_row(updated)
        return updated, True

    def _find_by_tx(self, tx_hash, kind, entity_id, action) -> Optional[LedgerEntry]:
        for e in self._ledger.values():
            if (e.tx_hash == tx_hash and e.kind == kind
                    and e.entity_id == entity_id and e.action == action):
                return e
        return None

    def _apply_event(self, event, result: PageResult):
        found = self._find_by_tx(event.tx_hash, event.kind, event.entity_id, event.action)
        if found is None:
            result.external.append(self._external(event))
            return
        if found.status in IN_FLIGHT or (
                found.status == LedgerStatus.CONFIRMED
                and (found.block_number, found.block_hash) != (event.block_number, event.block_hash)):
            entry, changed = self._terminal(
                found.ledger_id, LedgerStatus.CONFIRMED, block_number=event.block_number,
                block_hash=event.block_hash, log_index=event.log_index,
                event_payload=event.payload())
            if changed:
                result.confirmed.append(entry)
                return
        result.coalesced += 1

    def _external(self, event) -> LedgerEntry:
        key = (event.kind, event.entity_id)
        submitted = event.data_hash
        if event.action == Action.DELETE and key in self._integrity:
            submitted = self._integrity[key].content_hash
        entry = self._insert(
            kind=event.kind, entity_id=event.entity_id, action=event.action,
            submitted_hash=submitted, tx_hash=event.tx_hash, block_number=event.block_number,
            block_hash=event.block_hash, log_index=event.log_index, from_address=event.actor,
            status=LedgerStatus.CONFIRMED, tombstone=event.action == Action.DELETE,
            origin=Origin.EXTERNAL, contract_address=event.contract_address,
            event_payload=event.payload(), confirmed_at=utc_now(),
        )
        self._settle_row(entry)
        log.info("external %s %s id=%s tx=%s block=%s", event.kind.value, event.action.value,
                 event.entity_id, _short(event.tx_hash), event.block_number)
        return entry

    #  AnchorStore

    async def read_integrity(self, kind, entity_id):
        async with self._lock:
            record = self._integrity.get((Kind(kind), entity_id))
            if record is None:
                raise NotFound(f"{Kind(kind).value} {entity_id} not found")
            return record.model_copy()

    async def read_row(self, kind, entity_id):
        async with self._lock:
            row = self._rows.get((Kind(kind), entity_id))
            return canonical.project(kind, row) if row is not None else None

    async def begin_anchor(self, kind, entity_id, proposed_hash, action, origin=Origin.PIPELINE):
        kind, action = Kind(kind), Action(action)
        async with self._lock:
            key = (kind, entity_id)
            if key not in self._integrity:
                raise NotFound(f"{kind.value} {entity_id} not found")
            current = self._in_flight_for(kind, entity_id)
            if current is not None:
                raise ConcurrentAnchor(
                    f"{kind.value} {entity_id} already has ledger entry {current.ledger_id} "
                    f"{current.status.value}",
                    ledger_id=current.ledger_id,
                    submitted_hash=current.submitted_hash,
                    action=current.action.value,
                )
            entry = self._insert(kind=kind, entity_id=entity_id, action=action,
                                 submitted_hash=proposed_hash, origin=Origin(origin))
            self._integrity[key] = self._integrity[key].model_copy(
                update={"anchor_state": AnchorState.PENDING})
            return entry.ledger_id

    async def record_submitted(self, ledger_id, tx_hash, from_address, raw_tx=None):
        tx_hash, from_address = hex32(tx_hash), lower_address(from_address)
        async with self._lock:
            entry = self._entry(ledger_id)
            if entry.status == LedgerStatus.SUBMITTED and entry.tx_hash == tx_hash:
                return entry
            if entry.status != LedgerStatus.PENDING:
                log.warning("ledger %s: submitted after %s", ledger_id, entry.status.value)
                return entry
            entry = entry.model_copy(update={
                "status": LedgerStatus.SUBMITTED, "tx_hash": tx_hash, "from_address": from_address,
                "raw_tx": raw_tx,
            })
            self._ledger[ledger_id] = entry
            key = (entry.kind, entry.entity_id)
            if key in self._integrity:
                self._integrity[key] = self._integrity[key].model_copy(
                    update={"anchor_state": AnchorState.SUBMITTED})
            return entry

    async def record_terminal(self, ledger_id, status, block_number=None, gas_used=None,
                              event_payload=None, block_hash=None, log_index=None, error=None):
        async with self._lock:
            entry, _ = self._terminal(
                ledger_id, status, block_number=block_number, gas_used=gas_used,
                event_payload=event_payload, block_hash=block_hash, log_index=log_index,
                error=error)
            return entry

    async def get_entry(self, ledger_id):
        async with self._lock:
            return self._entry(ledger_id)

    async def latest_entry(self, kind, entity_id, status=None):
        async with self._lock:
            entries = self._for_entity(Kind(kind), entity_id)
            if status is not None:
                entries = [e for e in entries if e.status == LedgerStatus(status)]
            return max(entries, key=lambda e: e.ledger_id) if entries else None

    async def entries_for(self, kind, entity_id):
        async with self._lock:
            return sorted(self._for_entity(Kind(kind), entity_id), key=lambda e: e.ledger_id)

    async def in_flight(self):
        async with self._lock:
            return sorted((e for e in self._ledger.values() if e.status in IN_FLIGHT),
                          key=lambda e: e.ledger_id)

    async def stranded_orphans(self):
        async with self._lock:
            latest: dict[tuple, LedgerEntry] = {}
            for entry in self._ledger.values():
                key = (entry.kind, entry.entity_id)
                if key not in latest or entry.ledger_id > latest[key].ledger_id:
                    latest[key] = entry
            return sorted((e for e in latest.values() if e.status == LedgerStatus.ORPHANED),
                          key=lambda e: e.ledger_id)

    async def find_by_tx(self, tx_hash, kind, entity_id, action):
        async with self._lock:
            return self._find_by_tx(hex32(tx_hash), Kind(kind), entity_id, Action(action))

    async def record_external(self, event):
        async with self._lock:
            result = PageResult()
            self._apply_event(event, result)
            terminal = result.terminal
            return terminal[0] if terminal else None

    async def confirmed_in_range(self, kind, action, from_block, to_block=None):
        kind, action = Kind(kind), Action(action)
        async with self._lock:
            return sorted(
                (e for e in self._ledger.values()
                 if e.kind == kind and e.action == action
                 and e.status == LedgerStatus.CONFIRMED and e.tx_hash is not None
                 and e.block_number is not None and e.block_number >= from_block
                 and (to_block is None or e.block_number <= to_block)),
                key=_order,
            )

    async def apply_event_page(self, key, kind, action, from_block, to_block, to_block_hash, events):
        kind, action = Kind(kind), Action(action)
        result = PageResult()
        async with self._lock:
            snapshot = (copy.copy(self._ledger), copy.copy(self._integrity),
                        copy.copy(self._watermarks), self._next_id)
            try:
                seen = set()
                for event in sorted(events, key=lambda ev: ev.position):
                    seen.add((event.tx_hash, event.entity_id))
                    try:
                        self._apply_event(event, result)
                    except Exception as exc:
                        result.skipped += 1
                        log.error("event %s tx=%s id=%s skipped: %s", event.event_name,
                                  _short(event.tx_hash), event.entity_id, exc)

                for entry in list(self._ledger.values()):
                    if (entry.kind == kind and entry.action == action
                            and entry.status == LedgerStatus.CONFIRMED
                            and entry.tx_hash is not None and entry.block_number is not None
                            and from_block <= entry.block_number <= to_block
                            and (entry.tx_hash, entry.entity_id) not in seen):
                        orphaned, _ = self._terminal(entry.ledger_id, LedgerStatus.ORPHANED,
                                                     error=reorg_error("event not found on canonical chain"))
                        result.orphaned.append(orphaned)

                self._watermarks[key] = Watermark(key[0], key[1], to_block, hex32(to_block_hash))
            except BaseException:
                self._ledger, self._integrity, self._watermarks, self._next_id = snapshot
                raise
        return result

    async def rewind_watermark(self, key, to_block, to_block_hash, orphan_ids):
        async with self._lock:
            orphaned = []
            for ledger_id in orphan_ids:
                entry, changed = self._terminal(ledger_id, LedgerStatus.ORPHANED,
                                                error=reorg_error())
                if changed:
                    orphaned.append(entry)
            self._watermarks[key] = Watermark(key[0], key[1], to_block, hex32(to_block_hash))
            return orphaned

    async def get_watermark(self, key):
        async with self._lock:
            wm = self._watermarks.get(key)
            return copy.copy(wm) if wm else None

    async def history_rows(self, kind=None, entity_id=None, exists=None, since=None, limit=10_000):
        async with self._lock:
            entries = [history_entry(e) for e in self._ledger.values()
                       if e.status == LedgerStatus.CONFIRMED]
            represented = {(e.kind, e.id, e.tx_hash) for e in entries}
            for record in self._integrity.values():
                if record.content_hash is None:
                    continue
                if (record.kind, record.entity_id, record.tx_hash) not in represented:
                    entries.append(row_history_entry(record))
        return select_history(entries, kind=kind, entity_id=entity_id, exists=exists,
                              since=since, limit=limit)
