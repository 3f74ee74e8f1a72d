"""
anchor.py - The three calls CRUD services make: submit, verify, history.

    anchor = Anchor.from_settings(Settings.from_env())
    await anchor.start()
    ledger_id = await anchor.submit(Kind.MEDICINE, 101, row, Action.STORE)
    result = await anchor.verify(Kind.MEDICINE, 101)

submit() returns as soon as the PENDING ledger entry exists; the outcome is
visible later through read_integrity(). With an unusable chain configuration
verify() and history() keep working and submit() raises ConfigurationError.
"""
import asyncio
import logging
from typing import Optional

from . import canonical
from .chain.adapter import get_chain_client
from .config import Settings
from .errors import BadCanonicalization, ConcurrentAnchor, ConfigurationError
from .history import HistoryAggregator
from .ingester import EventIngester
from .pipeline import SubmissionPipeline
from .schemas import (
    Action, AnchorState, HistoryPage, IntegrityRecord, Kind, LedgerStatus, Origin, VerifyResult,
)
from .store import AnchorStore, MemoryAnchorStore
from .verifier import IntegrityVerifier

log = logging.getLogger("anchor.core")


def build_store(settings: Settings) -> AnchorStore:
    if settings.store_backend == "memory":
        return MemoryAnchorStore()
    if settings.store_backend == "postgres":
        from .db import PgAnchorStore
        return PgAnchorStore(settings.database_url, command_timeout=settings.rpc_timeout)
    raise ConfigurationError(f"unknown STORE_BACKEND {settings.store_backend!r}")


class Anchor:

    def __init__(self, store: AnchorStore, chain=None, settings: Optional[Settings] = None,
                 sleep=asyncio.sleep):
        self.settings = settings or Settings()
        self.store = store
        self.chain = chain
        self.history_cache = HistoryAggregator(
            store, ttl_seconds=self.settings.history_cache_ttl,
            max_entries=self.settings.max_history_entries)
        self.verifier = IntegrityVerifier(store, chain) if chain is not None else None
        self.pipeline = SubmissionPipeline(
            store, chain, self.settings, on_terminal=self.history_cache.invalidate, sleep=sleep)
        self.ingester = (EventIngester(store, chain, self.settings,
                                       on_orphaned=self._on_orphaned,
                                       on_terminal=self.history_cache.invalidate)
                         if chain is not None else None)
        self.submit_problems = [] if chain is not None else ["chain client is not configured"]
        if chain is not None and getattr(chain, "signer_address", None) is None:
            self.submit_problems = self.settings.chain_problems() or ["no signer configured"]
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, store: Optional[AnchorStore] = None,
                      chain=None) -> "Anchor":
        store = store or build_store(settings)
        if chain is None:
            try:
                chain = get_chain_client(settings)
            except ConfigurationError as exc:
                log.error("chain client disabled: %s", exc)
        anchor = cls(store, chain, settings)
        if anchor.submit_problems:
            log.error("Anchor.submit disabled: %s", "; ".join(anchor.submit_problems))
        return anchor

    async def _on_orphaned(self, entry):
        await self.pipeline.resubmit(entry)

    #  Collaborator interface

    async def submit(self, kind, entity_id: int, row: dict, action) -> int:
        """Start anchoring `row`. Returns the ledger id without waiting for the chain."""
        if self.submit_problems:
            raise ConfigurationError("submission disabled: " + "; ".join(self.submit_problems))
        kind, action = Kind(kind), Action(action)
        row_id = canonical.entity_id(kind, row)
        if row_id is not None and row_id != entity_id:
            raise BadCanonicalization(f"{kind.value}: row id {row_id} does not match {entity_id}")
        content_hash = canonical.compute_hash(kind, row)

        latest = await self.store.latest_entry(kind, entity_id, LedgerStatus.CONFIRMED)
        if latest is not None:
            already = (latest.tombstone if action == Action.DELETE
                       else not latest.tombstone and latest.submitted_hash == content_hash)
            integrity = await self.store.read_integrity(kind, entity_id)
            if already and integrity.anchor_state == AnchorState.CONFIRMED:
                log.info("%s %s %s: already anchored by ledger %s", kind.value, entity_id,
                         action.value, latest.ledger_id)
                return latest.ledger_id

        origin = Origin.PIPELINE if self.chain.supports(kind) else Origin.LEDGER_ONLY
        try:
            ledger_id = await self.store.begin_anchor(kind, entity_id, content_hash, action, origin)
        except ConcurrentAnchor as exc:
            if exc.submitted_hash == content_hash and exc.action == action.value:
                return exc.ledger_id
            raise
        log.info("%s %s %s queued ledger=%s hash=%s", kind.value, entity_id, action.value,
                 ledger_id, content_hash[:18])
        self.pipeline.enqueue(ledger_id)
        return ledger_id

    async def verify(self, kind, entity_id: int) -> VerifyResult:
        if self.verifier is None:
            raise ConfigurationError("verification needs a chain client")
        return await self.verifier.verify(kind, entity_id)

    async def verify_many(self, kind, entity_ids) -> dict:
        if self.verifier is None:
            raise ConfigurationError("verification needs a chain client")
        return await self.verifier.verify_many(kind, entity_ids)

    async def history(self, **filters) -> HistoryPage:
        return await self.history_cache.history(**filters)

    async def read_integrity(self, kind, entity_id: int) -> IntegrityRecord:
        return await self.store.read_integrity(kind, entity_id)

    async def cancel(self, ledger_id: int) -> bool:
        return await self.pipeline.cancel(ledger_id)

    #  Lifecycle

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.settings.ingest_poll_interval)
            try:
                await self.pipeline.sweep()
            except Exception as exc:
                log.error("sweep failed: %s", exc)

    async def start(self):
        """Boot recovery, then the pipeline, the ingester workers and the re-poll sweep."""
        if self.chain is None:
            log.warning("no chain client: pipeline and ingester not started")
            return
        self.pipeline.start()
        if not self.submit_problems:
            await self.pipeline.recover()
        self.ingester.start()
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="anchor-sweep")

    async def stop(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        if self.ingester is not None:
            await self.ingester.stop()
        await self.pipeline.stop()

    async def close(self):
        await self.stop()
        if self.chain is not None:
            await self.chain.close()
        await self.store.close()
