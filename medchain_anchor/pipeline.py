"""
pipeline.py - Submission pipeline: ledger entry -> transaction -> terminal state.

Runs as an asyncio background task. For every queued ledger id:
  1. Skip it unless the entry is still PENDING (cancelled, already sent)
  2. Take the signer lock, preflight + sign, record SUBMITTED with the tx hash
     and the signed bytes, then hand the bytes to the node
  3. Release the lock, then wait for the receipt (several waits may overlap)
  4. status=1 with the matching event       -> CONFIRMED
     status=1 without it                    -> FAILED (event missing)
     revert                                 -> FAILED with the reason
     no receipt before the deadline         -> stays SUBMITTED, re-polled by sweep()
  5. Transient RPC errors are retried with exponential backoff; running out
     of attempts before broadcast is permanent (FAILED)

A transaction is never rebuilt once its hash is recorded: lost replies and
restarts re-send the recorded bytes, which the node accepts at most once.
Ledger-only kinds (no contract method) are confirmed without touching the
chain.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from . import canonical
from .chain.adapter import SignedTx
from .errors import (
    AnchorError, ConcurrentAnchor, EventMissing, NotOnChain, Reverted, RpcTransient, Unconfirmed,
)
from .schemas import Action, LedgerEntry, LedgerStatus, Origin

log = logging.getLogger("anchor.pipeline")

CANCELLED = "cancelled"


class Backoff:
    """Exponential delays: initial, initial*factor, ... capped, `attempts` tries in total."""

    def __init__(self, initial: float = 1.0, factor: float = 2.0, cap: float = 60.0, attempts: int = 8):
        self.initial = initial
        self.factor = factor
        self.cap = cap
        self.attempts = attempts

    def delays(self):
        delay = self.initial
        for _ in range(self.attempts - 1):
            yield min(delay, self.cap)
            delay *= self.factor

    @classmethod
    def from_settings(cls, settings) -> "Backoff":
        return cls(settings.retry_initial, settings.retry_factor,
                   settings.retry_cap, settings.retry_attempts)


class SubmissionPipeline:

    def __init__(self, store, chain, settings,
                 on_terminal: Optional[Callable[[LedgerEntry], None]] = None,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self.store = store
        self.chain = chain
        self.settings = settings
        self.backoff = Backoff.from_settings(settings)
        self.on_terminal = on_terminal
        self._sleep = sleep
        self._signer = asyncio.Lock()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._broadcasting: set[int] = set()
        self._dispatcher: Optional[asyncio.Task] = None

    #  Queue

    def enqueue(self, ledger_id: int):
        if ledger_id in self._queued:
            return
        self._queued.add(ledger_id)
        self._queue.put_nowait(ledger_id)

    def _spawn(self, ledger_id: int):
        task = asyncio.create_task(self._process(ledger_id), name=f"anchor-{ledger_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self):
        log.info("submission pipeline started")
        while True:
            ledger_id = await self._queue.get()
            self._spawn(ledger_id)
            self._queue.task_done()

    def start(self):
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch(), name="anchor-pipeline")

    async def drain(self):
        """Wait until every queued job has reached a resting state."""
        while True:
            while not self._queue.empty():
                self._spawn(self._queue.get_nowait())
                self._queue.task_done()
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self):
        """Stop taking jobs. Broadcast transactions stay SUBMITTED for recover()."""
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        async with self._signer:
            pass
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        log.info("submission pipeline stopped")

    #  Boot recovery and re-polling

    async def recover(self) -> int:
        """Re-queue PENDING entries, re-poll SUBMITTED ones and resubmit stranded orphans."""
        entries = await self.store.in_flight()
        for entry in entries:
            self.enqueue(entry.ledger_id)
        if entries:
            log.info("recovering %d in-flight ledger entries", len(entries))
        return len(entries) + await self._resubmit_stranded()

    async def sweep(self) -> int:
        """Re-poll SUBMITTED entries whose receipt wait ran out and retry deferred orphans."""
        count = 0
        for entry in await self.store.in_flight():
            if entry.status == LedgerStatus.SUBMITTED and entry.ledger_id not in self._queued:
                self.enqueue(entry.ledger_id)
                count += 1
        return count + await self._resubmit_stranded()

    async def _resubmit_stranded(self) -> int:
        count = 0
        for orphan in await self.store.stranded_orphans():
            try:
                if await self.resubmit(orphan) is not None:
                    count += 1
            except AnchorError as exc:
                log.warning("orphaned ledger %s: resubmission deferred (%s)", orphan.ledger_id, exc)
        return count

    async def cancel(self, ledger_id: int) -> bool:
        """Cancel an entry that has not been broadcast. False once it has been sent."""
        async with self._signer:
            entry = await self.store.get_entry(ledger_id)
            if entry.status != LedgerStatus.PENDING or ledger_id in self._broadcasting:
                return False
            entry = await self.store.record_terminal(ledger_id, LedgerStatus.FAILED, error=CANCELLED)
        log.info("ledger %s cancelled", ledger_id)
        self._notify(entry)
        return True

    #  Orphans

    async def resubmit(self, orphaned: LedgerEntry) -> Optional[int]:
        """Queue a fresh submission for an orphaned entry, using the row as it is now.

        Transient chain errors are retried here; when they outlast the backoff
        the orphan stays the entity's latest entry and sweep() tries again.
        """
        kind, entity_id = orphaned.kind, orphaned.entity_id
        row = await self.store.read_row(kind, entity_id)
        if row is None:
            log.warning("orphaned %s %s: row is gone, not resubmitting", kind.value, entity_id)
            return None

        if orphaned.action == Action.DELETE:
            action, content_hash = Action.DELETE, orphaned.submitted_hash
        else:
            content_hash = canonical.compute_hash(kind, row)
            action = Action.UPDATE if await self._on_chain(kind, entity_id) else Action.STORE

        try:
            ledger_id = await self.store.begin_anchor(kind, entity_id, content_hash, action)
        except ConcurrentAnchor as exc:
            log.info("orphaned %s %s already has ledger %s in flight",
                     kind.value, entity_id, exc.ledger_id)
            return exc.ledger_id
        log.info("resubmitting %s %s as %s ledger=%s (orphaned %s)",
                 kind.value, entity_id, action.value, ledger_id, orphaned.ledger_id)
        self.enqueue(ledger_id)
        return ledger_id

    async def _on_chain(self, kind, entity_id: int) -> bool:
        delays = self.backoff.delays()
        while True:
            try:
                await self.chain.get_hash(kind, entity_id)
                return True
            except NotOnChain:
                return False
            except RpcTransient as exc:
                delay = next(delays, None)
                if delay is None:
                    raise
                log.warning("%s %s: chain lookup failed (%s), retry in %.1fs",
                            kind.value, entity_id, exc, delay)
                await self._sleep(delay)

    #  Job processing

    def _notify(self, entry: LedgerEntry):
        if self.on_terminal is not None:
            try:
                self.on_terminal(entry)
            except Exception as exc:
                log.error("on_terminal callback failed: %s", exc)

    async def _fail(self, entry: LedgerEntry, reason: str):
        entry = await self.store.record_terminal(entry.ledger_id, LedgerStatus.FAILED, error=reason)
        log.error("ledger %s %s %s id=%s FAILED: %s", entry.ledger_id, entry.kind.value,
                  entry.action.value, entry.entity_id, reason)
        self._notify(entry)

    async def _process(self, ledger_id: int):
        self._queued.discard(ledger_id)
        try:
            entry = await self.store.get_entry(ledger_id)
            if entry.status == LedgerStatus.PENDING:
                if entry.origin == Origin.LEDGER_ONLY:
                    await self._confirm_ledger_only(entry)
                    return
                entry = await self._broadcast(entry)
            elif entry.status == LedgerStatus.SUBMITTED:
                # left by a timeout or a previous run; the bytes may never have arrived
                entry = await self._redeliver(entry)
            if entry is not None and entry.status == LedgerStatus.SUBMITTED:
                await self._await_outcome(entry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("ledger %s: unexpected error: %s", ledger_id, exc)

    async def _confirm_ledger_only(self, entry: LedgerEntry):
        entry = await self.store.record_terminal(
            entry.ledger_id, LedgerStatus.CONFIRMED,
            event_payload={"origin": Origin.LEDGER_ONLY.value})
        log.info("ledger %s %s id=%s CONFIRMED (ledger only)",
                 entry.ledger_id, entry.kind.value, entry.entity_id)
        self._notify(entry)

    async def _broadcast(self, entry: LedgerEntry) -> Optional[LedgerEntry]:
        """Sign, record SUBMITTED with the tx hash, then hand the bytes to the node.

        Transient errors before the tx hash is recorded retry the whole
        preparation. After that point the transaction is never rebuilt.
        """
        delays = self.backoff.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._signer:
                    current = await self.store.get_entry(entry.ledger_id)
                    if current.status != LedgerStatus.PENDING:
                        return None
                    self._broadcasting.add(entry.ledger_id)
                    try:
                        signed = await self.chain.prepare(
                            entry.kind, entry.action, entry.entity_id, entry.submitted_hash)
                        try:
                            entry = await self.store.record_submitted(
                                entry.ledger_id, signed.tx_hash, self.chain.signer_address,
                                raw_tx=signed.raw)
                        except BaseException:
                            await self.chain.discard(signed)
                            raise
                        log.info("ledger %s %s %s id=%s SUBMITTED tx=%s", entry.ledger_id,
                                 entry.kind.value, entry.action.value, entry.entity_id,
                                 signed.tx_hash[:18])
                        return await self._deliver(entry)
                    finally:
                        self._broadcasting.discard(entry.ledger_id)
            except RpcTransient as exc:
                delay = next(delays, None)
                if delay is None:
                    await self._fail(entry, f"retries exhausted after {attempt} attempts: {exc}")
                    return None
                log.warning("ledger %s: transient error on attempt %d (%s), retry in %.1fs",
                            entry.ledger_id, attempt, exc, delay)
                await self._sleep(delay)
            except Reverted as exc:
                await self._fail(entry, exc.reason)
                return None
            except AnchorError as exc:
                await self._fail(entry, f"{exc.code}: {exc}")
                return None

    async def _deliver(self, entry: LedgerEntry) -> Optional[LedgerEntry]:
        """Send the recorded bytes, retrying with the same bytes. Never raises RpcTransient."""
        signed = SignedTx(entry.tx_hash, entry.raw_tx)
        delays = self.backoff.delays()
        while True:
            try:
                await self.chain.broadcast(signed)
                return entry
            except Reverted as exc:
                if await self._may_be_mined(entry):
                    return entry
                await self._fail(entry, exc.reason)
                return None
            except AnchorError as exc:
                delay = next(delays, None)
                if delay is None:
                    log.error("ledger %s: tx %s not acknowledged (%s), stays SUBMITTED",
                              entry.ledger_id, entry.tx_hash[:18], exc)
                    return entry
                log.warning("ledger %s: send failed (%s), re-sending the same tx in %.1fs",
                            entry.ledger_id, exc, delay)
                await self._sleep(delay)

    async def _redeliver(self, entry: LedgerEntry) -> Optional[LedgerEntry]:
        """Re-send a SUBMITTED entry's bytes unless its receipt already exists."""
        if not entry.raw_tx:
            return entry
        try:
            if await self.chain.get_receipt(entry.tx_hash) is not None:
                return entry
            await self.chain.broadcast(SignedTx(entry.tx_hash, entry.raw_tx))
        except Reverted as exc:
            await self._fail(entry, exc.reason)
            return None
        except AnchorError as exc:
            log.warning("ledger %s: re-send of tx %s failed (%s)",
                        entry.ledger_id, entry.tx_hash[:18], exc)
        return entry

    async def _may_be_mined(self, entry: LedgerEntry) -> bool:
        try:
            return await self.chain.get_receipt(entry.tx_hash) is not None
        except AnchorError as exc:
            log.warning("ledger %s: cannot look up tx %s (%s), keeping it SUBMITTED",
                        entry.ledger_id, entry.tx_hash[:18], exc)
            return True

    async def _await_outcome(self, entry: LedgerEntry):
        delays = self.backoff.delays()
        while True:
            try:
                receipt = await self.chain.await_receipt(
                    entry.tx_hash, confirmations=self.settings.submit_confirmations,
                    deadline=self.settings.receipt_deadline)
                break
            except Unconfirmed as exc:
                log.warning("ledger %s stays SUBMITTED: %s", entry.ledger_id, exc)
                return
            except Reverted as exc:
                await self._fail(entry, exc.reason)
                return
            except RpcTransient as exc:
                delay = next(delays, None)
                if delay is None:
                    log.error("ledger %s: receipt polling gave up (%s), stays SUBMITTED",
                              entry.ledger_id, exc)
                    return
                log.warning("ledger %s: receipt poll failed (%s), retry in %.1fs",
                            entry.ledger_id, exc, delay)
                await self._sleep(delay)

        event = receipt.find_event(entry.kind, entry.action, entry.entity_id)
        if event is None or (entry.action != Action.DELETE and event.data_hash != entry.submitted_hash):
            missing = EventMissing(f"tx {entry.tx_hash} succeeded without the expected "
                                   f"{entry.kind.value} {entry.action.value} event")
            await self._fail(entry, f"{missing.code}: {missing}")
            return

        entry = await self.store.record_terminal(
            entry.ledger_id, LedgerStatus.CONFIRMED, block_number=event.block_number,
            gas_used=receipt.gas_used, event_payload=event.payload(),
            block_hash=event.block_hash, log_index=event.log_index)
        log.info("ledger %s %s %s id=%s CONFIRMED block=%s hash=%s", entry.ledger_id,
                 entry.kind.value, entry.action.value, entry.entity_id, entry.block_number,
                 (entry.submitted_hash or "-")[:18])
        self._notify(entry)
