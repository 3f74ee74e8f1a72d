"""
chain/adapter.py - Chain client interface and the kind x action method table.

The pipeline, ingester and verifier talk to the contract only through
ChainClient. Swapping backends requires only changing CHAIN_BACKEND:
  evm  - web3 over JSON-RPC (chain/evm.py)
  stub - in-process contract with blocks and reorgs (chain/stub.py)

The tables below are the only place where a kind is coupled to a contract
method name. USER, RESIDENT and STOCK_TRANSACTION have no contract methods;
they are anchored in the ledger only.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..errors import ConfigurationError
from ..schemas import Action, Kind, hex32, lower_address

log = logging.getLogger("anchor.chain")

# (kind, action) -> contract method
METHODS: dict[tuple[Kind, Action], str] = {
    (Kind.MEDICINE, Action.STORE):  "storeMedicineHash",
    (Kind.MEDICINE, Action.UPDATE): "updateMedicineHash",
    (Kind.MEDICINE, Action.DELETE): "deleteMedicineHash",
    (Kind.STOCK, Action.STORE):     "storeStockHash",
    (Kind.STOCK, Action.UPDATE):    "updateStockHash",
    (Kind.STOCK, Action.DELETE):    "deleteStockHash",
    (Kind.RELEASE, Action.STORE):   "storeReceiptHash",
    (Kind.RELEASE, Action.UPDATE):  "updateReceiptHash",
    (Kind.RELEASE, Action.DELETE):  "deleteReceiptHash",
    (Kind.REMOVAL, Action.STORE):   "storeRemovalHash",
    (Kind.REMOVAL, Action.UPDATE):  "updateRemovalHash",
    (Kind.REMOVAL, Action.DELETE):  "deleteRemovalHash",
}

# (kind, action) -> event emitted by the method above
EVENTS: dict[tuple[Kind, Action], str] = {
    (Kind.MEDICINE, Action.STORE):  "MedicineHashStored",
    (Kind.MEDICINE, Action.UPDATE): "MedicineHashUpdated",
    (Kind.MEDICINE, Action.DELETE): "MedicineHashDeleted",
    (Kind.STOCK, Action.STORE):     "StockHashStored",
    (Kind.STOCK, Action.UPDATE):    "StockHashUpdated",
    (Kind.STOCK, Action.DELETE):    "StockHashDeleted",
    (Kind.RELEASE, Action.STORE):   "ReceiptHashStored",
    (Kind.RELEASE, Action.UPDATE):  "ReceiptHashUpdated",
    (Kind.RELEASE, Action.DELETE):  "ReceiptHashDeleted",
    (Kind.REMOVAL, Action.STORE):   "RemovalHashStored",
    (Kind.REMOVAL, Action.UPDATE):  "RemovalHashUpdated",
    (Kind.REMOVAL, Action.DELETE):  "RemovalHashDeleted",
}

EVENT_KEYS: dict[str, tuple[Kind, Action]] = {name: key for key, name in EVENTS.items()}

GETTERS: dict[Kind, str] = {
    Kind.MEDICINE: "getMedicineHash",
    Kind.STOCK:    "getStockHash",
    Kind.RELEASE:  "getReceiptHash",
    Kind.REMOVAL:  "getRemovalHash",
}

VERIFIERS: dict[Kind, str] = {
    Kind.MEDICINE: "verifyMedicineHash",
    Kind.STOCK:    "verifyStockHash",
    Kind.RELEASE:  "verifyReceiptHash",
    Kind.REMOVAL:  "verifyRemovalHash",
}

COUNTERS: dict[Kind, str] = {
    Kind.MEDICINE: "getMedicineCount",
    Kind.STOCK:    "getStockCount",
    Kind.RELEASE:  "getReceiptCount",
    Kind.REMOVAL:  "getRemovalCount",
}

# contract name fragment per kind, used in revert strings ("Medicine hash already exists")
TAGS: dict[Kind, str] = {
    Kind.MEDICINE: "Medicine",
    Kind.STOCK:    "Stock",
    Kind.RELEASE:  "Receipt",
    Kind.REMOVAL:  "Removal",
}


def supports(kind) -> bool:
    return Kind(kind) in GETTERS


def method_for(kind, action) -> str:
    try:
        return METHODS[(Kind(kind), Action(action))]
    except KeyError:
        raise ConfigurationError(f"no contract method for {kind}/{action}: kind is ledger-only")


def event_for(kind, action) -> str:
    try:
        return EVENTS[(Kind(kind), Action(action))]
    except KeyError:
        raise ConfigurationError(f"no contract event for {kind}/{action}: kind is ledger-only")


def parse_event_name(name: str) -> tuple[Kind, Action]:
    return EVENT_KEYS[name]


@dataclass(frozen=True)
class ChainRecord:
    """What getXHash returns. A deleted id keeps its hash with exists=False."""
    hash: Optional[str]
    added_by: Optional[str]
    timestamp: int
    exists: bool


@dataclass(frozen=True)
class ChainEvent:
    event_name: str
    kind: Kind
    action: Action
    entity_id: int
    data_hash: Optional[str]       # dataHash / newHash; None for deletes
    old_hash: Optional[str]        # updates only
    actor: Optional[str]           # addedBy / updatedBy / deletedBy, lowercase
    timestamp: int
    tx_hash: str
    block_number: int
    block_hash: Optional[str]
    log_index: int
    contract_address: Optional[str] = None

    @property
    def position(self) -> tuple:
        return (self.block_number, self.log_index)

    def payload(self) -> dict:
        out = {
            "event": self.event_name,
            "id": self.entity_id,
            "actor": self.actor,
            "timestamp": self.timestamp,
        }
        if self.data_hash is not None:
            out["hash"] = self.data_hash
        if self.old_hash is not None:
            out["old_hash"] = self.old_hash
        return out

    @classmethod
    def build(cls, event_name: str, args: dict, tx_hash, block_number: int,
              block_hash, log_index: int, contract_address=None) -> "ChainEvent":
        """Build from decoded log args, whatever event of the four families it is."""
        kind, action = parse_event_name(event_name)
        if action == Action.STORE:
            data_hash, old_hash, actor = args.get("dataHash"), None, args.get("addedBy")
        elif action == Action.UPDATE:
            data_hash, old_hash, actor = args.get("newHash"), args.get("oldHash"), args.get("updatedBy")
        else:
            data_hash, old_hash, actor = None, None, args.get("deletedBy")
        return cls(
            event_name=event_name,
            kind=kind,
            action=action,
            entity_id=int(args["id"]),
            data_hash=hex32(data_hash),
            old_hash=hex32(old_hash),
            actor=lower_address(actor) if actor else None,
            timestamp=int(args.get("timestamp") or 0),
            tx_hash=hex32(tx_hash),
            block_number=int(block_number),
            block_hash=hex32(block_hash),
            log_index=int(log_index),
            contract_address=lower_address(contract_address) if contract_address else None,
        )


@dataclass(frozen=True)
class SignedTx:
    """A signed transaction not yet known to be on chain.

    tx_hash is fixed at signing time, so it can be persisted before the raw
    bytes are handed to the node and re-sent verbatim after a lost reply.
    """
    tx_hash: str
    raw: str
    nonce: Optional[int] = None


@dataclass(frozen=True)
class ChainReceipt:
    tx_hash: str
    block_number: int
    block_hash: Optional[str]
    gas_used: Optional[int]
    status: int
    events: list = field(default_factory=list)

    def find_event(self, kind, action, entity_id: int) -> Optional[ChainEvent]:
        kind, action = Kind(kind), Action(action)
        for ev in self.events:
            if ev.kind == kind and ev.action == action and ev.entity_id == entity_id:
                return ev
        return None


class ChainClient:
    """Async interface every backend implements."""

    contract_address: Optional[str] = None
    signer_address: Optional[str] = None

    def supports(self, kind) -> bool:
        return supports(kind)

    def event_names(self) -> list[str]:
        return list(EVENTS.values())

    async def prepare(self, kind, action, entity_id: int, content_hash: Optional[str]) -> SignedTx:
        """Preflight and sign. Nothing has left the process when this returns."""
        raise NotImplementedError

    async def broadcast(self, signed: SignedTx) -> str:
        """Hand signed bytes to the node. Re-sending the same bytes is harmless."""
        raise NotImplementedError

    async def discard(self, signed: SignedTx):
        """Give back the nonce of a signed transaction that will never be sent."""

    async def submit(self, kind, action, entity_id: int, content_hash: Optional[str]) -> str:
        return await self.broadcast(await self.prepare(kind, action, entity_id, content_hash))

    async def await_receipt(self, tx_hash: str, confirmations: int = 1,
                            deadline: float = 300.0) -> ChainReceipt:
        raise NotImplementedError

    async def get_receipt(self, tx_hash: str) -> Optional[ChainReceipt]:
        raise NotImplementedError

    async def get_hash(self, kind, entity_id: int) -> ChainRecord:
        raise NotImplementedError

    async def get_count(self, kind) -> int:
        raise NotImplementedError

    async def query_events(self, event_name: str, from_block: int, to_block: int) -> list[ChainEvent]:
        raise NotImplementedError

    async def current_block(self) -> int:
        raise NotImplementedError

    async def block_hash(self, number: int) -> Optional[str]:
        raise NotImplementedError

    async def close(self):
        pass


def get_chain_client(settings) -> ChainClient:
    """Build the backend selected by CHAIN_BACKEND."""
    backend = settings.chain_backend
    if backend == "stub":
        from .stub import StubChain
        return StubChain(
            max_span=settings.event_page_span,
            poll_interval=min(settings.receipt_poll_interval, 0.05),
        )
    if backend == "evm":
        from .evm import EvmChainClient
        return EvmChainClient(settings)
    raise ConfigurationError(f"unknown CHAIN_BACKEND {backend!r}")
