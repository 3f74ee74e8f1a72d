"""
db.py - PostgreSQL Anchor Store (asyncpg).

Tables (DDL compiled from models.py):
  anchor_ledger      - attempts and observed events, partial unique index on
                       in-flight (kind, entity_id) and on (tx_hash, kind, entity_id, action)
  anchor_watermarks  - ingester progress per (contract, event)
  <domain tables>    - only the integrity columns are written here

Each public coroutine runs in one transaction. Lock order is always the
domain row first, then ledger rows, so begin_anchor and record_terminal
cannot deadlock each other. Ingester pages use one savepoint per event.
"""
import json
import logging
from typing import Optional

import asyncpg

from . import canonical
from .errors import ConcurrentAnchor, NotFound
from .models import KIND_MODELS, schema_statements, table_for
from .schemas import (
    Action, AnchorState, HistoryEntry, IntegrityRecord, Kind, LedgerEntry, LedgerStatus, Origin,
    hex32, lower_address, utc_now,
)
from .store import (
    AnchorStore, PageResult, Watermark, _short, integrity_after, reorg_error, terminal_transition,
)

log = logging.getLogger("anchor.db")

_LEDGER_INSERT = """
INSERT INTO anchor_ledger
  (kind, entity_id, action, submitted_hash, tx_hash, block_number, block_hash,
   log_index, from_address, gas_used, status, tombstone, origin, contract_address,
   event_payload, error, created_at, confirmed_at)
VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12,$13,$14,$15::jsonb,$16,$17,$18)
"""

_LEDGER_UPDATE = """
UPDATE anchor_ledger SET
  status=$2, tx_hash=$3, from_address=$4, block_number=$5, block_hash=$6,
  log_index=$7, gas_used=$8, tombstone=$9, event_payload=$10::jsonb,
  error=$11, confirmed_at=$12, raw_tx=$13
WHERE ledger_id=$1
"""

_IN_FLIGHT = "status IN ('PENDING','SUBMITTED')"


def _entry(row) -> LedgerEntry:
    d = dict(row)
    if isinstance(d.get("event_payload"), str):
        d["event_payload"] = json.loads(d["event_payload"])
    d["event_payload"] = d.get("event_payload") or {}
    return LedgerEntry(**d)


async def init_db(pool: asyncpg.Pool):
    """Create core tables and add the integrity columns to existing domain tables."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for stmt in schema_statements():
                await conn.execute(stmt)
            for model in KIND_MODELS.values():
                table = model.__tablename__
                await conn.execute(f"""
                    ALTER TABLE {table}
                      ADD COLUMN IF NOT EXISTS content_hash VARCHAR(66),
                      ADD COLUMN IF NOT EXISTS tx_hash VARCHAR(66),
                      ADD COLUMN IF NOT EXISTS anchor_state VARCHAR(16) NOT NULL DEFAULT 'NONE',
                      ADD COLUMN IF NOT EXISTS last_synced_at TIMESTAMP WITH TIME ZONE
                """)
            await conn.execute("ALTER TABLE anchor_ledger ADD COLUMN IF NOT EXISTS raw_tx TEXT")
    log.info("anchor schema initialised: %d core statements, %d domain tables",
             len(schema_statements()), len(KIND_MODELS))


#  History query

# confirmed ledger entries, then domain rows no confirmed entry accounts for
_HISTORY_LEDGER = """
SELECT kind, entity_id AS id, submitted_hash AS hash, from_address AS added_by,
       COALESCE(NULLIF((event_payload->>'timestamp')::bigint, 0),
                floor(extract(epoch FROM COALESCE(confirmed_at, created_at)))::bigint) AS ts,
       NOT tombstone AS present, tx_hash
FROM anchor_ledger WHERE {where}
"""

_HISTORY_ROWS = """
SELECT '{kind}'::varchar AS kind, d.{pk} AS id, d.content_hash AS hash, NULL::varchar AS added_by,
       COALESCE(floor(extract(epoch FROM d.last_synced_at))::bigint, 0) AS ts,
       TRUE AS present, d.tx_hash
FROM {table} d
WHERE {where} AND NOT EXISTS (
  SELECT 1 FROM anchor_ledger l
  WHERE l.status='CONFIRMED' AND l.kind='{kind}' AND l.entity_id=d.{pk}
    AND l.tx_hash IS NOT DISTINCT FROM d.tx_hash)
"""

_HISTORY_ORDER = 'ts DESC, kind COLLATE "C" DESC, id DESC, COALESCE(tx_hash, \'\') COLLATE "C" DESC'


def history_query(kind=None, entity_id=None, exists=None, since=None) -> tuple[str, str, list]:
    """Return (page SQL, per-kind count SQL, shared parameters).

    The page SQL takes one extra trailing parameter, the row limit.
    """
    if since is not None and not isinstance(since, int):
        since = canonical.epoch_seconds("since", since)
    params: list = []

    def param(value) -> str:
        params.append(value)
        return f"${len(params)}"

    ledger_where = "status='CONFIRMED'"
    if kind is not None:
        ledger_where += f" AND kind={param(Kind(kind).value)}"
    row_where = "d.content_hash IS NOT NULL"
    if entity_id is not None:
        placeholder = param(entity_id)
        ledger_where += f" AND entity_id={placeholder}"
        row_where += " AND d.{pk}=" + placeholder

    parts = [_HISTORY_LEDGER.format(where=ledger_where)]
    for k in ([Kind(kind)] if kind is not None else list(KIND_MODELS)):
        table, pk = table_for(k)
        parts.append(_HISTORY_ROWS.format(kind=k.value, table=table, pk=pk,
                                          where=row_where.format(pk=pk)))

    filters = []
    if exists is not None:
        filters.append(f"present={param(bool(exists))}")
    if since is not None:
        filters.append(f"ts>={param(since)}")
    matched = "WITH history AS (" + " UNION ALL ".join(parts) + ") SELECT * FROM history"
    if filters:
        matched += " WHERE " + " AND ".join(filters)

    page_sql = f"{matched} ORDER BY {_HISTORY_ORDER} LIMIT ${len(params) + 1}"
    count_sql = f"SELECT kind, count(*) AS n FROM ({matched}) matched GROUP BY kind"
    return page_sql, count_sql, params


class PgAnchorStore(AnchorStore):

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10,
                 command_timeout: Optional[float] = 30.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn, min_size=self.min_size, max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
        return self._pool

    async def close(self):
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def init_db(self):
        await init_db(await self.get_pool())

    #  Helpers (called inside a transaction)

    @staticmethod
    async def _lock_integrity(conn, kind: Kind, entity_id: int) -> Optional[IntegrityRecord]:
        table, pk = table_for(kind)
        row = await conn.fetchrow(
            f"SELECT content_hash, tx_hash, anchor_state, last_synced_at "
            f"FROM {table} WHERE {pk} = $1 FOR UPDATE", entity_id)
        if row is None:
            return None
        return IntegrityRecord(kind=kind, entity_id=entity_id, **dict(row))

    @staticmethod
    async def _write_integrity(conn, record: IntegrityRecord):
        table, pk = table_for(record.kind)
        await conn.execute(
            f"UPDATE {table} SET content_hash=$2, tx_hash=$3, anchor_state=$4, last_synced_at=$5 "
            f"WHERE {pk} = $1",
            record.entity_id, record.content_hash, record.tx_hash,
            record.anchor_state.value, record.last_synced_at,
        )

    @staticmethod
    async def _write_entry(conn, entry: LedgerEntry):
        await conn.execute(
            _LEDGER_UPDATE, entry.ledger_id, entry.status.value, entry.tx_hash,
            entry.from_address, entry.block_number, entry.block_hash, entry.log_index,
            entry.gas_used, entry.tombstone, json.dumps(entry.event_payload),
            entry.error, entry.confirmed_at, entry.raw_tx,
        )

    @staticmethod
    async def _insert(conn, entry: LedgerEntry, on_conflict: str = "") -> Optional[LedgerEntry]:
        row = await conn.fetchrow(
            _LEDGER_INSERT + on_conflict + " RETURNING *",
            entry.kind.value, entry.entity_id, entry.action.value, entry.submitted_hash,
            entry.tx_hash, entry.block_number, entry.block_hash, entry.log_index,
            entry.from_address, entry.gas_used, entry.status.value, entry.tombstone,
            entry.origin.value, entry.contract_address, json.dumps(entry.event_payload),
            entry.error, entry.created_at, entry.confirmed_at,
        )
        return _entry(row) if row else None

    @staticmethod
    async def _in_flight_for(conn, kind: Kind, entity_id: int, exclude: Optional[int] = None):
        row = await conn.fetchrow(
            f"SELECT * FROM anchor_ledger WHERE kind=$1 AND entity_id=$2 AND {_IN_FLIGHT} "
            f"AND ledger_id <> $3",
            kind.value, entity_id, exclude or 0,
        )
        return _entry(row) if row else None

    async def _settle_row(self, conn, entry: LedgerEntry, record: Optional[IntegrityRecord]):
        if record is None:
            return
        rows = await conn.fetch(
            "SELECT * FROM anchor_ledger WHERE kind=$1 AND entity_id=$2 AND status='CONFIRMED'",
            entry.kind.value, entry.entity_id,
        )
        other = await self._in_flight_for(conn, entry.kind, entry.entity_id, exclude=entry.ledger_id)
        await self._write_integrity(
            conn, integrity_after(record, entry, [_entry(r) for r in rows], other))

    async def _terminal(self, conn, ledger_id: int, status, **kwargs) -> tuple[LedgerEntry, bool]:
        head = await conn.fetchrow(
            "SELECT kind, entity_id FROM anchor_ledger WHERE ledger_id=$1", ledger_id)
        if head is None:
            raise NotFound(f"ledger entry {ledger_id} not found")
        kind = Kind(head["kind"])
        record = await self._lock_integrity(conn, kind, head["entity_id"])
        entry = _entry(await conn.fetchrow(
            "SELECT * FROM anchor_ledger WHERE ledger_id=$1 FOR UPDATE", ledger_id))
        updated = terminal_transition(entry, status, **kwargs)
        if updated is None:
            return entry, False
        await self._write_entry(conn, updated)
        await self._settle_row(conn, updated, record)
        return updated, True

    async def _apply_event(self, conn, event, result: PageResult):
        row = await conn.fetchrow(
            "SELECT * FROM anchor_ledger WHERE tx_hash=$1 AND kind=$2 AND entity_id=$3 AND action=$4",
            event.tx_hash, event.kind.value, event.entity_id, event.action.value,
        )
        if row is None:
            entry = await self._external(conn, event)
            if entry is None:
                result.coalesced += 1
            else:
                result.external.append(entry)
            return
        found = _entry(row)
        if found.status in (LedgerStatus.PENDING, LedgerStatus.SUBMITTED) or (
                found.status == LedgerStatus.CONFIRMED
                and (found.block_number, found.block_hash) != (event.block_number, event.block_hash)):
            entry, changed = await self._terminal(
                conn, found.ledger_id, LedgerStatus.CONFIRMED, block_number=event.block_number,
                block_hash=event.block_hash, log_index=event.log_index,
                event_payload=event.payload())
            if changed:
                result.confirmed.append(entry)
                return
        result.coalesced += 1

    async def _external(self, conn, event) -> Optional[LedgerEntry]:
        record = await self._lock_integrity(conn, event.kind, event.entity_id)
        submitted = event.data_hash
        if event.action == Action.DELETE and record is not None:
            submitted = record.content_hash
        entry = await self._insert(conn, LedgerEntry(
            ledger_id=0, kind=event.kind, entity_id=event.entity_id, action=event.action,
            submitted_hash=submitted, tx_hash=event.tx_hash, block_number=event.block_number,
            block_hash=event.block_hash, log_index=event.log_index, from_address=event.actor,
            status=LedgerStatus.CONFIRMED, tombstone=event.action == Action.DELETE,
            origin=Origin.EXTERNAL, contract_address=event.contract_address,
            event_payload=event.payload(), confirmed_at=utc_now(),
        ), on_conflict=(" ON CONFLICT (tx_hash, kind, entity_id, action)"
                        " WHERE tx_hash IS NOT NULL DO NOTHING"))
        if entry is not None:
            await self._settle_row(conn, entry, record)
            log.info("external %s %s id=%s tx=%s block=%s", event.kind.value, event.action.value,
                     event.entity_id, _short(event.tx_hash), event.block_number)
        return entry

    @staticmethod
    async def _put_watermark(conn, key, to_block: int, to_block_hash: Optional[str]):
        await conn.execute("""
            INSERT INTO anchor_watermarks
              (contract_address, event_name, last_block, last_block_hash, updated_at)
            VALUES ($1, $2, $3, $4, now())
            ON CONFLICT (contract_address, event_name) DO UPDATE SET
              last_block = EXCLUDED.last_block,
              last_block_hash = EXCLUDED.last_block_hash,
              updated_at = now()
        """, key[0], key[1], to_block, hex32(to_block_hash))

    #  AnchorStore

    async def read_integrity(self, kind, entity_id):
        kind = Kind(kind)
        table, pk = table_for(kind)
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT content_hash, tx_hash, anchor_state, last_synced_at "
                f"FROM {table} WHERE {pk} = $1", entity_id)
        if row is None:
            raise NotFound(f"{kind.value} {entity_id} not found")
        return IntegrityRecord(kind=kind, entity_id=entity_id, **dict(row))

    async def read_row(self, kind, entity_id):
        kind = Kind(kind)
        table, pk = table_for(kind)
        columns = ", ".join(canonical.layout(kind).field_names())
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {columns} FROM {table} WHERE {pk} = $1", entity_id)
        return dict(row) if row else None

    async def begin_anchor(self, kind, entity_id, proposed_hash, action, origin=Origin.PIPELINE):
        kind, action = Kind(kind), Action(action)
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                record = await self._lock_integrity(conn, kind, entity_id)
                if record is None:
                    raise NotFound(f"{kind.value} {entity_id} not found")
                current = await self._in_flight_for(conn, kind, entity_id)
                if current is not None:
                    raise ConcurrentAnchor(
                        f"{kind.value} {entity_id} already has ledger entry {current.ledger_id} "
                        f"{current.status.value}",
                        ledger_id=current.ledger_id, submitted_hash=current.submitted_hash,
                        action=current.action.value,
                    )
                try:
                    entry = await self._insert(conn, LedgerEntry(
                        ledger_id=0, kind=kind, entity_id=entity_id, action=action,
                        submitted_hash=proposed_hash, origin=Origin(origin)))
                except asyncpg.UniqueViolationError as exc:
                    raise ConcurrentAnchor(f"{kind.value} {entity_id}: {exc}")
                await self._write_integrity(
                    conn, record.model_copy(update={"anchor_state": AnchorState.PENDING}))
        return entry.ledger_id

    async def record_submitted(self, ledger_id, tx_hash, from_address, raw_tx=None):
        tx_hash, from_address = hex32(tx_hash), lower_address(from_address)
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                head = await conn.fetchrow(
                    "SELECT kind, entity_id FROM anchor_ledger WHERE ledger_id=$1", ledger_id)
                if head is None:
                    raise NotFound(f"ledger entry {ledger_id} not found")
                record = await self._lock_integrity(conn, Kind(head["kind"]), head["entity_id"])
                entry = _entry(await conn.fetchrow(
                    "SELECT * FROM anchor_ledger WHERE ledger_id=$1 FOR UPDATE", ledger_id))
                if entry.status != LedgerStatus.PENDING:
                    if not (entry.status == LedgerStatus.SUBMITTED and entry.tx_hash == tx_hash):
                        log.warning("ledger %s: submitted after %s", ledger_id, entry.status.value)
                    return entry
                entry = entry.model_copy(update={
                    "status": LedgerStatus.SUBMITTED, "tx_hash": tx_hash,
                    "from_address": from_address, "raw_tx": raw_tx,
                })
                await self._write_entry(conn, entry)
                if record is not None:
                    await self._write_integrity(
                        conn, record.model_copy(update={"anchor_state": AnchorState.SUBMITTED}))
        return entry

    async def record_terminal(self, ledger_id, status, block_number=None, gas_used=None,
                              event_payload=None, block_hash=None, log_index=None, error=None):
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                entry, _ = await self._terminal(
                    conn, ledger_id, status, block_number=block_number, gas_used=gas_used,
                    event_payload=event_payload, block_hash=block_hash, log_index=log_index,
                    error=error)
        return entry

    async def get_entry(self, ledger_id):
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM anchor_ledger WHERE ledger_id=$1", ledger_id)
        if row is None:
            raise NotFound(f"ledger entry {ledger_id} not found")
        return _entry(row)

    async def latest_entry(self, kind, entity_id, status=None):
        sql = "SELECT * FROM anchor_ledger WHERE kind=$1 AND entity_id=$2"
        params = [Kind(kind).value, entity_id]
        if status is not None:
            sql += " AND status=$3"
            params.append(LedgerStatus(status).value)
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql + " ORDER BY ledger_id DESC LIMIT 1", *params)
        return _entry(row) if row else None

    async def entries_for(self, kind, entity_id):
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM anchor_ledger WHERE kind=$1 AND entity_id=$2 ORDER BY ledger_id",
                Kind(kind).value, entity_id)
        return [_entry(r) for r in rows]

    async def in_flight(self):
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM anchor_ledger WHERE {_IN_FLIGHT} ORDER BY ledger_id")
        return [_entry(r) for r in rows]

    async def stranded_orphans(self):
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM (
                  SELECT DISTINCT ON (kind, entity_id) * FROM anchor_ledger
                  ORDER BY kind, entity_id, ledger_id DESC
                ) latest
                WHERE status = 'ORPHANED'
                ORDER BY ledger_id
            """)
        return [_entry(r) for r in rows]

    async def find_by_tx(self, tx_hash, kind, entity_id, action):
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM anchor_ledger WHERE tx_hash=$1 AND kind=$2 AND entity_id=$3 AND action=$4",
                hex32(tx_hash), Kind(kind).value, entity_id, Action(action).value)
        return _entry(row) if row else None

    async def record_external(self, event):
        result = PageResult()
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._apply_event(conn, event, result)
        terminal = result.terminal
        return terminal[0] if terminal else None

    async def confirmed_in_range(self, kind, action, from_block, to_block=None):
        sql = ("SELECT * FROM anchor_ledger WHERE kind=$1 AND action=$2 AND status='CONFIRMED' "
               "AND tx_hash IS NOT NULL AND block_number >= $3")
        params = [Kind(kind).value, Action(action).value, from_block]
        if to_block is not None:
            sql += " AND block_number <= $4"
            params.append(to_block)
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql + " ORDER BY block_number, log_index, ledger_id", *params)
        return [_entry(r) for r in rows]

    async def apply_event_page(self, key, kind, action, from_block, to_block, to_block_hash, events):
        kind, action = Kind(kind), Action(action)
        result = PageResult()
        seen = set()
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for event in sorted(events, key=lambda ev: ev.position):
                    seen.add((event.tx_hash, event.entity_id))
                    try:
                        async with conn.transaction():
                            await self._apply_event(conn, event, result)
                    except (asyncpg.PostgresError, ValueError, NotFound) as exc:
                        result.skipped += 1
                        log.error("event %s tx=%s id=%s skipped: %s", event.event_name,
                                  _short(event.tx_hash), event.entity_id, exc)

                rows = await conn.fetch("""
                    SELECT ledger_id, tx_hash, entity_id FROM anchor_ledger
                    WHERE kind=$1 AND action=$2 AND status='CONFIRMED'
                      AND tx_hash IS NOT NULL AND block_number BETWEEN $3 AND $4
                    ORDER BY block_number, log_index
                """, kind.value, action.value, from_block, to_block)
                for r in rows:
                    if (r["tx_hash"], r["entity_id"]) in seen:
                        continue
                    entry, changed = await self._terminal(
                        conn, r["ledger_id"], LedgerStatus.ORPHANED,
                        error=reorg_error("event not found on canonical chain"))
                    if changed:
                        result.orphaned.append(entry)

                await self._put_watermark(conn, key, to_block, to_block_hash)
        return result

    async def rewind_watermark(self, key, to_block, to_block_hash, orphan_ids):
        orphaned = []
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for ledger_id in orphan_ids:
                    entry, changed = await self._terminal(
                        conn, ledger_id, LedgerStatus.ORPHANED, error=reorg_error())
                    if changed:
                        orphaned.append(entry)
                await self._put_watermark(conn, key, to_block, to_block_hash)
        return orphaned

    async def get_watermark(self, key):
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT contract_address, event_name, last_block, last_block_hash, updated_at "
                "FROM anchor_watermarks WHERE contract_address=$1 AND event_name=$2", *key)
        return Watermark(**dict(row)) if row else None

    async def history_rows(self, kind=None, entity_id=None, exists=None, since=None, limit=10_000):
        page_sql, count_sql, params = history_query(kind, entity_id, exists, since)
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(page_sql, *params, limit)
                totals = await conn.fetch(count_sql, *params)
        entries = [HistoryEntry(kind=Kind(r["kind"]), id=r["id"], hash=r["hash"],
                                added_by=r["added_by"], timestamp=r["ts"], exists=r["present"],
                                tx_hash=r["tx_hash"]) for r in rows]
        return entries, {r["kind"]: r["n"] for r in totals}
