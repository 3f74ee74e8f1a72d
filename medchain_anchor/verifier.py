"""
verifier.py - Three-way integrity check: current row, stored hash, chain hash.

  current  = keccak256(canon(row as it is in the DB now))
  stored   = content_hash integrity column (last confirmed anchor)
  chain    = what the contract returns for the id

Decision table:
  row absent                          -> ABSENT
  stored is null                      -> NOT_ON_CHAIN
  chain has nothing for the id        -> NOT_ON_CHAIN
  stored == chain                     -> INTACT if current == stored, else MODIFIED
  stored != chain                     -> MODIFIED

While an update is in flight the row already holds the new content; a current
hash equal to the in-flight submitted hash is treated as matching. Deleted ids
are checked against the hash the contract keeps after deletion.

Nothing here writes. RpcTransient propagates: without the chain there is no
verdict to give.
"""
import logging
from typing import Iterable, Optional

from . import canonical
from .errors import NotFound, NotOnChain
from .schemas import IN_FLIGHT, Kind, LedgerStatus, Verdict, VerifyResult

log = logging.getLogger("anchor.verifier")


class IntegrityVerifier:

    def __init__(self, store, chain):
        self.store = store
        self.chain = chain

    async def _chain_hash(self, kind: Kind, entity_id: int) -> tuple[Optional[str], bool]:
        """(hash on chain, tombstoned). The hash is None when the id was never stored."""
        if not self.chain.supports(kind):
            return None, False
        try:
            record = await self.chain.get_hash(kind, entity_id)
        except NotOnChain as exc:
            if exc.record is not None and exc.record.hash:
                return exc.record.hash, True
            return None, False
        return record.hash, False

    async def verify(self, kind, entity_id: int) -> VerifyResult:
        kind = Kind(kind)
        row = await self.store.read_row(kind, entity_id)
        if row is None:
            return VerifyResult(kind=kind, entity_id=entity_id, verdict=Verdict.ABSENT,
                                reason="row does not exist")
        try:
            integrity = await self.store.read_integrity(kind, entity_id)
        except NotFound:
            return VerifyResult(kind=kind, entity_id=entity_id, verdict=Verdict.ABSENT,
                                reason="row does not exist")

        current = canonical.compute_hash(kind, row)
        stored = integrity.content_hash
        latest = await self.store.latest_entry(kind, entity_id)
        pending = latest.submitted_hash if latest is not None and latest.status in IN_FLIGHT else None
        confirmed = await self.store.latest_entry(kind, entity_id, LedgerStatus.CONFIRMED)

        result = dict(
            kind=kind, entity_id=entity_id, current_hash=current, stored_hash=stored,
            pending_hash=pending, tx_hash=integrity.tx_hash,
            confirmed_at=confirmed.confirmed_at if confirmed else None,
            anchor_state=integrity.anchor_state,
        )

        if stored is None:
            return VerifyResult(verdict=Verdict.NOT_ON_CHAIN, reason="no confirmed anchor", **result)

        chain_hash, tombstone = await self._chain_hash(kind, entity_id)
        result.update(chain_hash=chain_hash, tombstone=tombstone)
        if chain_hash is None:
            reason = ("kind is anchored in the ledger only" if not self.chain.supports(kind)
                      else "contract has no hash for this id")
            return VerifyResult(verdict=Verdict.NOT_ON_CHAIN, reason=reason, **result)

        # the in-flight update may already be mined before its receipt was recorded
        if chain_hash != stored and pending is not None and chain_hash == pending:
            stored = pending

        if chain_hash != stored:
            log.warning("%s %s: stored %s != chain %s", kind.value, entity_id,
                        stored[:18], chain_hash[:18])
            return VerifyResult(verdict=Verdict.MODIFIED,
                                reason="stored hash differs from the chain", **result)

        if current == stored or (pending is not None and current == pending):
            reason = "row matches the anchored hash"
            if current != stored:
                reason = "row matches the hash being anchored"
            return VerifyResult(verdict=Verdict.INTACT, reason=reason, **result)

        log.warning("%s %s: current %s != anchored %s", kind.value, entity_id,
                    current[:18], stored[:18])
        return VerifyResult(verdict=Verdict.MODIFIED,
                            reason="row differs from the anchored hash", **result)

    async def verify_many(self, kind, entity_ids: Iterable[int]) -> dict:
        """Verify several ids of one kind; returns the results and a verdict summary."""
        results = [await self.verify(kind, entity_id) for entity_id in entity_ids]
        summary = {v.value: 0 for v in Verdict}
        for r in results:
            summary[r.verdict.value] += 1
        return {"kind": Kind(kind).value, "total": len(results), "summary": summary,
                "results": results}
