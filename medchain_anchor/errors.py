"""
errors.py - Error taxonomy for the anchoring core.

Every component maps its internal failures to exactly one of these kinds.
`permanent` tells the pipeline whether a retry can change the outcome:
only permanent failures move an entity to anchor_state=FAILED.
"""
from typing import Optional


class AnchorError(Exception):
    code = "ANCHOR_ERROR"
    permanent = True

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), "permanent": self.permanent}


class BadCanonicalization(AnchorError):
    """Required field missing or a value of the wrong type."""
    code = "BAD_CANONICALIZATION"


class NotFound(AnchorError):
    code = "NOT_FOUND"


class ConcurrentAnchor(AnchorError):
    """Another submission for the same (kind, id) is still PENDING or SUBMITTED."""
    code = "CONCURRENT_ANCHOR"
    permanent = False

    def __init__(self, message: str, ledger_id: Optional[int] = None,
                 submitted_hash: Optional[str] = None, action: Optional[str] = None):
        super().__init__(message)
        self.ledger_id = ledger_id
        self.submitted_hash = submitted_hash
        self.action = action


class RpcTransient(AnchorError):
    """Timeout, 429, 5xx or a dropped connection. Retried with backoff."""
    code = "RPC_TRANSIENT"
    permanent = False


class Reverted(AnchorError):
    code = "REVERTED"

    def __init__(self, reason: str = "execution reverted"):
        super().__init__(reason)
        self.reason = reason


class EventMissing(AnchorError):
    """Receipt status=1 but the expected contract event is not in its logs."""
    code = "EVENT_MISSING"


class Unconfirmed(AnchorError):
    """No receipt within the deadline; the ledger entry stays SUBMITTED."""
    code = "UNCONFIRMED"
    permanent = False


class Reorganized(AnchorError):
    code = "REORGANIZED"
    permanent = False


class ConfigurationError(AnchorError):
    code = "CONFIGURATION"


class NotOnChain(AnchorError):
    """The contract reports exists=false for the id.

    `record` carries what the contract still returned (a deleted id keeps its
    hash), or None when nothing was ever stored.
    """
    code = "NOT_ON_CHAIN"

    def __init__(self, message: str, record=None):
        super().__init__(message)
        self.record = record


class WatermarkNotPersisted(AnchorError):
    """An ingested page or a rewind could not be written; the worker stops."""
    code = "WATERMARK_NOT_PERSISTED"
    permanent = False
