"""
schemas.py - Data contracts shared by the anchoring core.

Hashes and transaction hashes cross every boundary as lowercase 0x-prefixed
hex (66 chars). Addresses are stored lowercase. Whatever the caller hands
in is normalised here, so comparisons elsewhere can be byte-exact.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_HEX32 = re.compile(r"^[0-9a-f]{64}$")
_ADDRESS = re.compile(r"^0x[0-9a-f]{40}$")
ZERO_HASH = "0x" + "0" * 64


class Kind(str, Enum):
    MEDICINE          = "MEDICINE"
    STOCK             = "STOCK"
    STOCK_TRANSACTION = "STOCK_TRANSACTION"
    RELEASE           = "RELEASE"
    REMOVAL           = "REMOVAL"
    USER              = "USER"
    RESIDENT          = "RESIDENT"


class Action(str, Enum):
    STORE  = "STORE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AnchorState(str, Enum):
    NONE      = "NONE"
    PENDING   = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED    = "FAILED"
    ORPHANED  = "ORPHANED"


class LedgerStatus(str, Enum):
    PENDING   = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED    = "FAILED"
    ORPHANED  = "ORPHANED"


IN_FLIGHT = frozenset({LedgerStatus.PENDING, LedgerStatus.SUBMITTED})
TERMINAL = frozenset({LedgerStatus.CONFIRMED, LedgerStatus.FAILED, LedgerStatus.ORPHANED})


class Origin(str, Enum):
    PIPELINE    = "PIPELINE"     # submitted by this process
    EXTERNAL    = "EXTERNAL"     # event observed on chain with no local submission
    LEDGER_ONLY = "LEDGER_ONLY"  # kind without an on-chain method


class Verdict(str, Enum):
    INTACT       = "INTACT"
    MODIFIED     = "MODIFIED"
    NOT_ON_CHAIN = "NOT_ON_CHAIN"
    ABSENT       = "ABSENT"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hex32(value: Any) -> Optional[str]:
    """Normalise a 32-byte value (bytes or hex, with or without 0x) to 0x-lowercase hex."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"expected 32 bytes, got {len(value)}")
        return "0x" + bytes(value).hex()
    s = str(value).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if not _HEX32.match(s):
        raise ValueError(f"not a 32-byte hex value: {value!r}")
    return "0x" + s


def lower_address(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip().lower()
    if not _ADDRESS.match(s):
        raise ValueError(f"not an EVM address: {value!r}")
    return s


class IntegrityRecord(BaseModel):
    """Integrity columns of one anchored row."""
    kind:           Kind
    entity_id:      int
    content_hash:   Optional[str] = None
    tx_hash:        Optional[str] = None
    anchor_state:   AnchorState = AnchorState.NONE
    last_synced_at: Optional[datetime] = None


class LedgerEntry(BaseModel):
    """One submission attempt (or one externally observed event)."""
    ledger_id:        int
    kind:             Kind
    entity_id:        int
    action:           Action
    submitted_hash:   Optional[str] = None
    tx_hash:          Optional[str] = None
    raw_tx:           Optional[str] = None       # signed bytes, re-sent verbatim until mined
    block_number:     Optional[int] = None
    block_hash:       Optional[str] = None
    log_index:        Optional[int] = None
    from_address:     Optional[str] = None
    gas_used:         Optional[int] = None
    status:           LedgerStatus = LedgerStatus.PENDING
    tombstone:        bool = False
    origin:           Origin = Origin.PIPELINE
    contract_address: Optional[str] = None
    event_payload:    dict[str, Any] = Field(default_factory=dict)
    error:            Optional[str] = None
    created_at:       datetime = Field(default_factory=utc_now)
    confirmed_at:     Optional[datetime] = None

    @field_validator("submitted_hash", "tx_hash", "block_hash")
    @classmethod
    def _hex(cls, v):
        return hex32(v)

    @field_validator("from_address", "contract_address")
    @classmethod
    def _addr(cls, v):
        return lower_address(v)

    @property
    def position(self) -> tuple:
        """Ordering key for reconciliation: (block_number, log_index)."""
        return (self.block_number if self.block_number is not None else -1,
                self.log_index if self.log_index is not None else -1)


class VerifyResult(BaseModel):
    """Verdict plus the three authorities it was derived from."""
    kind:          Kind
    entity_id:     int
    verdict:       Verdict
    reason:        str
    current_hash:  Optional[str] = None
    stored_hash:   Optional[str] = None
    chain_hash:    Optional[str] = None
    pending_hash:  Optional[str] = None
    tx_hash:       Optional[str] = None
    confirmed_at:  Optional[datetime] = None
    anchor_state:  Optional[AnchorState] = None
    tombstone:     bool = False


class HistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind:      Kind
    id:        int
    hash:      Optional[str] = None
    added_by:  Optional[str] = Field(default=None, alias="addedBy")
    timestamp: int
    exists:    bool = True
    tx_hash:   Optional[str] = None


class HistoryPage(BaseModel):
    entries:      list[HistoryEntry]
    truncated:    bool = False
    counts:       dict[str, int] = Field(default_factory=dict)
    cached:       bool = False
    generated_at: datetime = Field(default_factory=utc_now)
