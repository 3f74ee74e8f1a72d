"""
chain/stub.py - In-process stand-in for the MedicineInventory contract.

Used with CHAIN_BACKEND=stub for local development and by the test-suite.
It keeps real block structure so the pipeline and the ingester run the same
code paths as against a node:
  - every block has a number, a hash and a parent hash
  - transactions are preflighted (revert strings as the contract emits them)
    and re-checked when mined, so two racing stores give one revert
  - events carry (block_number, log_index) and the emitting contract
  - reorg(depth) drops the last blocks and replays contract state

Fault injection:
  inject(method, exc, times)  raise exc from the next `times` calls of method
  drop_events = True          mined txs succeed but emit no logs (ABI drift)
  authorized = False          every write reverts with an AccessControl error
  automine = False            txs wait in the mempool until mine() is called
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from web3 import Web3

from ..errors import NotOnChain, Reverted, Unconfirmed
from ..schemas import ZERO_HASH, Action, Kind, hex32, lower_address
from .adapter import (
    EVENTS, TAGS, ChainClient, ChainEvent, ChainReceipt, ChainRecord, SignedTx, method_for,
)

log = logging.getLogger("anchor.chain.stub")

DEFAULT_SIGNER = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
DEFAULT_CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
STAFF_ROLE = "0x" + bytes(Web3.keccak(text="STAFF_ROLE")).hex()
GENESIS_TS = 1_736_467_200   # 2025-01-10T00:00:00Z
BLOCK_TIME = 5
TX_GAS = 52_000


@dataclass
class _Tx:
    tx_hash: str
    sender: str
    kind: Kind
    action: Action
    entity_id: int
    content_hash: Optional[str]
    status: int = 1
    revert_reason: Optional[str] = None
    events: list = field(default_factory=list)


@dataclass
class _Block:
    number: int
    hash: str
    parent_hash: Optional[str]
    timestamp: int
    txs: list = field(default_factory=list)


class StubChain(ChainClient):

    def __init__(self, signer: str = DEFAULT_SIGNER, contract_address: str = DEFAULT_CONTRACT,
                 automine: bool = True, max_span: int = 20_000, poll_interval: float = 0.01):
        self.signer_address = lower_address(signer)
        self.contract_address = lower_address(contract_address)
        self.automine = automine
        self.max_span = max_span
        self.poll_interval = poll_interval
        self.drop_events = False
        self.authorized = True

        self._salt = 0
        self._tx_counter = 0
        self._pending: list[_Tx] = []
        self._faults: dict[str, list[Exception]] = defaultdict(list)
        self.calls: dict[str, int] = defaultdict(int)

        genesis = _Block(0, self._block_hash_for(0, None, []), None, GENESIS_TS)
        self._blocks: list[_Block] = [genesis]
        self._records: dict[tuple[Kind, int], ChainRecord] = {}
        self._tx_index: dict[str, tuple[_Tx, int]] = {}
        self._signed: dict[str, _Tx] = {}
        self._accepted: dict[str, int] = {}

    #  Test controls

    def inject(self, method: str, exc: Exception, times: int = 1):
        self._faults[method].extend([exc] * times)

    def _maybe_fail(self, method: str):
        self.calls[method] += 1
        queue = self._faults.get(method)
        if queue:
            raise queue.pop(0)

    @property
    def head(self) -> int:
        return self._blocks[-1].number

    def mine(self, count: int = 1) -> int:
        """Mine `count` blocks; the first one takes every pending transaction."""
        for i in range(count):
            txs, self._pending = (self._pending, []) if i == 0 else ([], self._pending)
            parent = self._blocks[-1]
            number = parent.number + 1
            block = _Block(
                number=number,
                hash=self._block_hash_for(number, parent.hash, txs),
                parent_hash=parent.hash,
                timestamp=GENESIS_TS + number * BLOCK_TIME,
                txs=txs,
            )
            self._blocks.append(block)
            self._apply_block(block)
        return self.head

    def reorg(self, depth: int, keep_txs: bool = False) -> int:
        """Replace the last `depth` blocks with a fork of the same length.

        With keep_txs the dropped transactions return to the mempool and are
        re-included in the first new block; otherwise they disappear.
        """
        depth = min(depth, self.head)
        dropped = self._blocks[-depth:] if depth else []
        self._blocks = self._blocks[:len(self._blocks) - depth]
        orphaned_txs = [tx for block in dropped for tx in block.txs]
        self._salt += 1
        self._replay()
        if keep_txs:
            for tx in orphaned_txs:
                tx.events, tx.status, tx.revert_reason = [], 1, None
            self._pending = orphaned_txs + self._pending
        log.info("stub reorg depth=%d dropped_txs=%d keep=%s", depth, len(orphaned_txs), keep_txs)
        self.mine(depth)
        return self.head

    async def submit_as(self, sender: str, kind, action, entity_id: int,
                        content_hash: Optional[str]) -> str:
        """Send a transaction from another staff wallet (an external writer)."""
        return self._push(self._build(lower_address(sender), Kind(kind), Action(action),
                                      entity_id, content_hash))

    #  Contract semantics

    def _block_hash_for(self, number: int, parent: Optional[str], txs: list) -> str:
        seed = f"{number}:{parent}:{self._salt}:" + ",".join(tx.tx_hash for tx in txs)
        return "0x" + bytes(Web3.keccak(text=seed)).hex()

    def _check(self, sender: str, kind: Kind, action: Action, entity_id: int,
               content_hash: Optional[str]) -> Optional[str]:
        if not self.authorized:
            return f"AccessControl: account {sender} is missing role {STAFF_ROLE}"
        tag = TAGS[kind]
        record = self._records.get((kind, entity_id))
        exists = record is not None and record.exists
        if action == Action.STORE:
            if not content_hash or content_hash == ZERO_HASH:
                return "Hash cannot be zero"
            if exists:
                return f"{tag} hash already exists"
        elif action == Action.UPDATE:
            if not exists:
                return f"{tag} hash does not exist"
            if not content_hash or content_hash == ZERO_HASH:
                return "Hash cannot be zero"
        elif not exists:
            return f"{tag} hash does not exist"
        return None

    def _apply_tx(self, tx: _Tx, block: _Block, log_index: int) -> int:
        """Execute tx against current state; returns the next free log index."""
        reason = self._check(tx.sender, tx.kind, tx.action, tx.entity_id, tx.content_hash)
        if reason:
            tx.status, tx.revert_reason, tx.events = 0, reason, []
            return log_index
        key = (tx.kind, tx.entity_id)
        previous = self._records.get(key)
        if tx.action == Action.DELETE:
            self._records[key] = ChainRecord(previous.hash, previous.added_by, block.timestamp, False)
        else:
            self._records[key] = ChainRecord(tx.content_hash, tx.sender, block.timestamp, True)
        tx.status, tx.revert_reason = 1, None
        if self.drop_events:
            tx.events = []
            return log_index

        name = EVENTS[(tx.kind, tx.action)]
        args = {"id": tx.entity_id, "timestamp": block.timestamp}
        if tx.action == Action.STORE:
            args.update(dataHash=tx.content_hash, addedBy=tx.sender)
        elif tx.action == Action.UPDATE:
            args.update(oldHash=previous.hash, newHash=tx.content_hash, updatedBy=tx.sender)
        else:
            args.update(deletedBy=tx.sender)
        tx.events = [ChainEvent.build(name, args, tx.tx_hash, block.number, block.hash,
                                      log_index, self.contract_address)]
        return log_index + 1

    def _apply_block(self, block: _Block):
        log_index = 0
        for tx in block.txs:
            log_index = self._apply_tx(tx, block, log_index)
            self._tx_index[tx.tx_hash] = (tx, block.number)

    def _replay(self):
        self._records = {}
        self._tx_index = {}
        for block in self._blocks[1:]:
            self._apply_block(block)

    def _build(self, sender: str, kind: Kind, action: Action, entity_id: int,
               content_hash: Optional[str]) -> _Tx:
        method_for(kind, action)
        content_hash = hex32(content_hash) if action != Action.DELETE else None
        reason = self._check(sender, kind, action, entity_id, content_hash)
        if reason:
            raise Reverted(reason)
        self._tx_counter += 1
        seed = f"{sender}:{self._tx_counter}:{kind.value}:{action.value}:{entity_id}"
        return _Tx("0x" + bytes(Web3.keccak(text=seed)).hex(), sender, kind, action,
                   entity_id, content_hash)

    def _push(self, tx: _Tx) -> str:
        self._pending.append(tx)
        log.debug("stub tx %s %s/%s id=%s", tx.tx_hash[:18], tx.kind.value, tx.action.value,
                  tx.entity_id)
        if self.automine:
            self.mine()
        return tx.tx_hash

    def broadcasts(self, tx_hash: str) -> int:
        """How many times the node accepted these bytes as a new transaction."""
        return self._accepted.get(tx_hash, 0)

    def _receipt(self, tx_hash: str) -> Optional[ChainReceipt]:
        found = self._tx_index.get(tx_hash)
        if found is None:
            return None
        tx, number = found
        block = self._blocks[number]
        return ChainReceipt(
            tx_hash=tx.tx_hash,
            block_number=number,
            block_hash=block.hash,
            gas_used=TX_GAS if tx.status else 30_000,
            status=tx.status,
            events=list(tx.events),
        )

    #  ChainClient

    async def prepare(self, kind, action, entity_id, content_hash):
        self._maybe_fail("prepare")
        tx = self._build(self.signer_address, Kind(kind), Action(action), entity_id, content_hash)
        self._signed[tx.tx_hash] = tx
        return SignedTx(tx.tx_hash, "stub:" + tx.tx_hash)

    async def broadcast(self, signed):
        self._maybe_fail("broadcast")
        tx = self._signed.get(signed.tx_hash)
        if tx is None:
            raise Reverted("nonce too low")
        known = signed.tx_hash in self._tx_index or any(
            p.tx_hash == signed.tx_hash for p in self._pending)
        if not known:
            self._accepted[signed.tx_hash] = self._accepted.get(signed.tx_hash, 0) + 1
            self._push(tx)
        return signed.tx_hash

    async def await_receipt(self, tx_hash, confirmations=1, deadline=300.0):
        loop = asyncio.get_running_loop()
        end = loop.time() + deadline
        while True:
            self._maybe_fail("await_receipt")
            receipt = self._receipt(tx_hash)
            if receipt is not None and self.head - receipt.block_number + 1 >= confirmations:
                if receipt.status != 1:
                    found = self._tx_index[tx_hash][0]
                    raise Reverted(found.revert_reason or "execution reverted")
                return receipt
            if loop.time() >= end:
                raise Unconfirmed(f"no receipt for {tx_hash} within {deadline}s")
            await asyncio.sleep(self.poll_interval)

    async def get_receipt(self, tx_hash):
        self._maybe_fail("get_receipt")
        return self._receipt(tx_hash)

    async def get_hash(self, kind, entity_id):
        self._maybe_fail("get_hash")
        kind = Kind(kind)
        if not self.supports(kind):
            raise NotOnChain(f"{kind.value} is not anchored on chain")
        record = self._records.get((kind, entity_id))
        if record is None:
            raise NotOnChain(f"{TAGS[kind]} {entity_id} does not exist on chain")
        if not record.exists:
            raise NotOnChain(f"{TAGS[kind]} {entity_id} was deleted", record=record)
        return record

    async def get_count(self, kind):
        self._maybe_fail("get_count")
        kind = Kind(kind)
        return sum(1 for k, _ in self._records if k == kind)

    async def query_events(self, event_name, from_block, to_block):
        self._maybe_fail("query_events")
        if to_block - from_block + 1 > self.max_span:
            raise ValueError(f"block range {from_block}-{to_block} exceeds span {self.max_span}")
        out = []
        for block in self._blocks[max(from_block, 0):to_block + 1]:
            for tx in block.txs:
                out.extend(ev for ev in tx.events if ev.event_name == event_name)
        return sorted(out, key=lambda ev: ev.position)

    async def current_block(self):
        self._maybe_fail("current_block")
        return self.head

    async def block_hash(self, number):
        if 0 <= number < len(self._blocks):
            return self._blocks[number].hash
        return None
