"""
ingester.py - Watermark-driven reconciliation of contract events.

One worker per (contract, event). Every INGEST_POLL_INTERVAL seconds each
worker:
  1. Reads its watermark W and checks the stored hash of block W against
     the chain; a mismatch means a reorg, so W is rewound by FINALITY_DEPTH
     and confirmed entries above it whose receipt vanished are orphaned
  2. Computes the safe tip T = head - FINALITY_DEPTH
  3. Fetches events in [W+1, min(T, W+EVENT_PAGE_SPAN)]
  4. In one unit of work: coalesces each event with its ledger entry (or
     records it as EXTERNAL), orphans confirmed entries of that event's
     (kind, action) inside the page whose event is gone, advances W

Blocks above the safe tip are never read, so a reorg shallower than the
finality depth cannot orphan anything. Per-event errors are logged and
skipped; query and read errors back off and retry. Only failing to persist
a page or a rewind stops the worker.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .chain.adapter import parse_event_name
from .errors import AnchorError, RpcTransient, WatermarkNotPersisted
from .schemas import LedgerEntry
from .store import PageResult

log = logging.getLogger("anchor.ingester")

# large ranges are retried with this span when the node refuses them
MIN_PAGE_SPAN = 2_000


class EventIngester:

    def __init__(self, store, chain, settings,
                 on_orphaned: Optional[Callable[[LedgerEntry], Awaitable]] = None,
                 on_terminal: Optional[Callable[[LedgerEntry], None]] = None):
        self.store = store
        self.chain = chain
        self.settings = settings
        self.on_orphaned = on_orphaned
        self.on_terminal = on_terminal
        self.span = settings.event_page_span
        self._workers: dict[str, asyncio.Task] = {}

    def key(self, event_name: str) -> tuple[str, str]:
        return (self.chain.contract_address or "", event_name)

    #  One poll

    async def poll_once(self, event_name: str) -> PageResult:
        """Process at most one page of `event_name`. Returns what the page did."""
        kind, action = parse_event_name(event_name)
        key = self.key(event_name)
        depth = self.settings.finality_depth

        wm = await self.store.get_watermark(key)
        last = wm.last_block if wm else self.settings.start_block - 1

        if wm is not None and wm.last_block_hash and last >= 0:
            chain_hash = await self.chain.block_hash(last)
            if chain_hash != wm.last_block_hash:
                return await self._rewind(event_name, last)

        head = await self.chain.current_block()
        tip = head - depth
        if tip <= last:
            return PageResult()
        to_block = min(tip, last + self.span)

        try:
            events = await self.chain.query_events(event_name, last + 1, to_block)
        except ValueError as exc:
            # refused range: shrink the page, the next poll retries
            self.span = max(MIN_PAGE_SPAN, self.span // 2)
            log.warning("%s: query %d-%d failed (%s), span now %d",
                        event_name, last + 1, to_block, exc, self.span)
            return PageResult()

        to_hash = await self.chain.block_hash(to_block)
        try:
            result = await self.store.apply_event_page(
                key, kind, action, last + 1, to_block, to_hash, events)
        except Exception as exc:
            raise WatermarkNotPersisted(f"{event_name} blocks {last + 1}-{to_block}: {exc}") from exc

        if events or result.orphaned:
            log.info("%s blocks %d-%d: %d events, %d confirmed, %d external, %d coalesced, "
                     "%d orphaned, %d skipped", event_name, last + 1, to_block, len(events),
                     len(result.confirmed), len(result.external), result.coalesced,
                     len(result.orphaned), result.skipped)
        await self._after(result)
        return result

    async def _rewind(self, event_name: str, last: int) -> PageResult:
        kind, action = parse_event_name(event_name)
        key = self.key(event_name)
        new_last = max(self.settings.start_block - 1, last - self.settings.finality_depth)

        orphan_ids = []
        for entry in await self.store.confirmed_in_range(kind, action, new_last + 1):
            receipt = await self.chain.get_receipt(entry.tx_hash)
            if receipt is None or receipt.block_hash != entry.block_hash:
                orphan_ids.append(entry.ledger_id)

        new_hash = await self.chain.block_hash(new_last) if new_last >= 0 else None
        try:
            orphaned = await self.store.rewind_watermark(key, new_last, new_hash, orphan_ids)
        except Exception as exc:
            raise WatermarkNotPersisted(f"{event_name} rewind to {new_last}: {exc}") from exc
        log.warning("%s: reorg below block %d, watermark rewound to %d, %d entries orphaned",
                    event_name, last, new_last, len(orphaned))
        result = PageResult(orphaned=orphaned)
        await self._after(result)
        return result

    async def _after(self, result: PageResult):
        if self.on_terminal is not None:
            for entry in result.terminal:
                self.on_terminal(entry)
        if self.on_orphaned is not None:
            for entry in result.orphaned:
                try:
                    await self.on_orphaned(entry)
                except AnchorError as exc:
                    log.error("resubmission of orphaned ledger %s failed: %s", entry.ledger_id, exc)

    async def poll_all(self) -> dict[str, PageResult]:
        results = {}
        for name in self.chain.event_names():
            results[name] = await self.poll_once(name)
        return results

    async def catch_up(self, max_pages: int = 1_000) -> int:
        """Poll every event until no page makes progress. Returns pages processed."""
        pages = 0
        for name in self.chain.event_names():
            for _ in range(max_pages):
                before = await self.store.get_watermark(self.key(name))
                await self.poll_once(name)
                after = await self.store.get_watermark(self.key(name))
                if after is None or (before is not None and after.last_block == before.last_block
                                     and after.last_block_hash == before.last_block_hash):
                    break
                pages += 1
        return pages

    #  One-shot backfill

    async def sync(self, from_block: int, to_block: Optional[int] = None) -> dict[str, int]:
        """Record every event in [from_block, to_block] without moving the watermarks."""
        if to_block is None:
            to_block = await self.chain.current_block() - self.settings.finality_depth
        counts: dict[str, int] = {}
        for name in self.chain.event_names():
            counts[name] = 0
            start = from_block
            while start <= to_block:
                end = min(to_block, start + self.span - 1)
                for event in await self.chain.query_events(name, start, end):
                    try:
                        entry = await self.store.record_external(event)
                    except AnchorError as exc:
                        log.error("sync %s tx=%s skipped: %s", name, event.tx_hash[:18], exc)
                        continue
                    if entry is not None:
                        counts[name] += 1
                        if self.on_terminal is not None:
                            self.on_terminal(entry)
                start = end + 1
        log.info("sync %d-%d recorded %d events", from_block, to_block, sum(counts.values()))
        return counts

    #  Workers

    async def _worker(self, event_name: str):
        log.info("ingester worker %s started", event_name)
        interval = self.settings.ingest_poll_interval
        failures = 0
        while True:
            delay = interval
            try:
                await self.poll_once(event_name)
                failures = 0
            except asyncio.CancelledError:
                raise
            except WatermarkNotPersisted as exc:
                log.error("%s: worker stopped: %s", event_name, exc)
                return
            except Exception as exc:
                failures += 1
                delay = min(self.settings.retry_cap, interval * 2 ** min(failures, 10))
                if isinstance(exc, RpcTransient):
                    log.warning("%s: poll failed (%s), retry in %.2fs", event_name, exc, delay)
                else:
                    log.error("%s: poll error %s: %s, retry in %.2fs",
                              event_name, type(exc).__name__, exc, delay)
            await asyncio.sleep(delay)

    def running(self) -> list[str]:
        """Event names whose worker task is still alive."""
        return [name for name, task in self._workers.items() if not task.done()]

    def start(self):
        for name in self.chain.event_names():
            task = self._workers.get(name)
            if task is None or task.done():
                self._workers[name] = asyncio.create_task(self._worker(name), name=f"ingest-{name}")

    async def stop(self):
        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
