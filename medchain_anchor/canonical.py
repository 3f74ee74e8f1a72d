"""
canonical.py - Deterministic encoding and keccak-256 hashing of anchored rows.

All content hashing goes through this module. Two rows that are semantically
identical always produce the same bytes, on any machine, in any process.

Canonicalisation rules:
  - One layout per kind: an ordered list of typed fields plus a version
  - Unknown keys are ignored; a missing or null required field is rejected
  - Strings: NFC-normalised, UTF-8, never trimmed
  - Timestamps: int64 seconds since epoch, floored
  - Money: int64 minor units (centavos); floats are never encoded
  - Optional field present with None -> 0x00; absent -> no bytes at all

Byte layout:
  MAGIC | len(kind) | kind | u16 version | { u16 index | 0x00 | 0x01 value }*

JSON is deliberately not used here: key order, number formatting and
escaping all vary between runtimes.
"""
import struct
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping

from web3 import Web3

from .errors import BadCanonicalization
from .schemas import Kind, hex32

MAGIC = b"MEDCHAIN-CANON"
HASH_ALGORITHM = "keccak-256"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class FieldType(str, Enum):
    INT       = "int"
    STR       = "str"
    ENUM      = "enum"
    TIMESTAMP = "timestamp"
    MONEY     = "money"
    BOOL      = "bool"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType
    required: bool = False


@dataclass(frozen=True)
class KindLayout:
    kind: Kind
    version: int
    fields: tuple

    @property
    def id_field(self) -> str:
        return self.fields[0].name

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]


def _req(name, type_):
    return FieldSpec(name, type_, required=True)


def _opt(name, type_):
    return FieldSpec(name, type_, required=False)


T = FieldType

# Field order is frozen per version. Adding, removing or reordering a field
# requires a new version so rows hashed under the old layout keep their hash.
LAYOUTS: dict[Kind, KindLayout] = {
    Kind.MEDICINE: KindLayout(Kind.MEDICINE, 1, (
        _req("medicine_id", T.INT),
        _req("name", T.STR),
        _opt("generic_name", T.STR),
        _opt("dosage_form", T.STR),
        _opt("strength", T.STR),
        _opt("manufacturer", T.STR),
        _opt("category", T.STR),
        _req("barangay", T.ENUM),
        _req("created_at", T.TIMESTAMP),
    )),
    Kind.STOCK: KindLayout(Kind.STOCK, 1, (
        _req("stock_id", T.INT),
        _req("medicine_id", T.INT),
        _req("batch_number", T.STR),
        _req("quantity", T.INT),
        _opt("unit_cost", T.MONEY),
        _opt("total_cost", T.MONEY),
        _opt("supplier_name", T.STR),
        _req("date_received", T.TIMESTAMP),
        _req("expiry_date", T.TIMESTAMP),
        _opt("storage_location", T.STR),
        _opt("barangay", T.ENUM),
    )),
    Kind.STOCK_TRANSACTION: KindLayout(Kind.STOCK_TRANSACTION, 1, (
        _req("transaction_id", T.INT),
        _req("stock_id", T.INT),
        _req("transaction_type", T.ENUM),
        _req("quantity_changed", T.INT),
        _req("quantity_before", T.INT),
        _req("quantity_after", T.INT),
        _req("transaction_date", T.TIMESTAMP),
        _opt("notes", T.STR),
    )),
    Kind.RELEASE: KindLayout(Kind.RELEASE, 1, (
        _req("release_id", T.INT),
        _req("medicine_id", T.INT),
        _req("stock_id", T.INT),
        _opt("resident_id", T.INT),
        _req("resident_name", T.STR),
        _req("quantity_released", T.INT),
        _req("date_released", T.TIMESTAMP),
        _opt("prescription_number", T.STR),
        _opt("prescribing_doctor", T.STR),
        _opt("dosage_instructions", T.STR),
        _opt("concern", T.STR),
        _opt("notes", T.STR),
    )),
    Kind.REMOVAL: KindLayout(Kind.REMOVAL, 1, (
        _req("removal_id", T.INT),
        _req("stock_id", T.INT),
        _req("medicine_id", T.INT),
        _req("quantity_removed", T.INT),
        _req("reason", T.ENUM),
        _req("date_removed", T.TIMESTAMP),
        _opt("notes", T.STR),
    )),
    Kind.USER: KindLayout(Kind.USER, 1, (
        _req("user_id", T.INT),
        _req("wallet_address", T.STR),
        _req("full_name", T.STR),
        _opt("email", T.STR),
        _req("role", T.ENUM),
        _opt("assigned_barangay", T.ENUM),
    )),
    Kind.RESIDENT: KindLayout(Kind.RESIDENT, 1, (
        _req("resident_id", T.INT),
        _req("first_name", T.STR),
        _opt("middle_name", T.STR),
        _req("last_name", T.STR),
        _opt("date_of_birth", T.TIMESTAMP),
        _opt("gender", T.ENUM),
        _req("barangay", T.ENUM),
        _opt("address", T.STR),
        _opt("is_senior_citizen", T.BOOL),
        _opt("is_pregnant", T.BOOL),
    )),
}


def layout(kind) -> KindLayout:
    try:
        return LAYOUTS[Kind(kind)]
    except ValueError:
        raise BadCanonicalization(f"unknown kind: {kind!r}")


def project(kind, row: Mapping[str, Any]) -> dict:
    """Return the declared subset of a row, keeping present-but-null fields."""
    names = layout(kind).field_names()
    return {k: row[k] for k in names if k in row}


#  Typed encoders

def _int64(name: str, value: int) -> bytes:
    try:
        return struct.pack(">q", value)
    except struct.error:
        raise BadCanonicalization(f"{name}: {value} does not fit in int64")


def _enc_int(name, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadCanonicalization(f"{name}: expected int, got {type(value).__name__}")
    return _int64(name, value)


def _enc_str(name, value):
    if not isinstance(value, str):
        raise BadCanonicalization(f"{name}: expected str, got {type(value).__name__}")
    data = unicodedata.normalize("NFC", value).encode("utf-8")
    return struct.pack(">I", len(data)) + data


def _enc_enum(name, value):
    if isinstance(value, Enum):
        value = value.value
    return _enc_str(name, value)


def _to_datetime(name, value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise BadCanonicalization(f"{name}: not an ISO-8601 timestamp: {value!r}")
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise BadCanonicalization(f"{name}: expected timestamp, got {type(value).__name__}")


def epoch_seconds(name: str, value) -> int:
    """Seconds since epoch, floored. Ints are taken as already being seconds."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    delta = _to_datetime(name, value) - _EPOCH
    # timedelta keeps seconds/microseconds non-negative, so this is a floor
    return delta.days * 86400 + delta.seconds


def _enc_timestamp(name, value):
    return _int64(name, epoch_seconds(name, value))


def minor_units(name: str, value) -> int:
    if isinstance(value, bool):
        raise BadCanonicalization(f"{name}: expected decimal amount, got bool")
    try:
        if isinstance(value, float):
            amount = Decimal(repr(value))
        else:
            amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise BadCanonicalization(f"{name}: not a decimal amount: {value!r}")
    scaled = amount * 100
    if not scaled.is_finite() or scaled != scaled.to_integral_value():
        raise BadCanonicalization(f"{name}: {value} has sub-centavo precision")
    return int(scaled)


def _enc_money(name, value):
    return _int64(name, minor_units(name, value))


def _enc_bool(name, value):
    if not isinstance(value, bool):
        raise BadCanonicalization(f"{name}: expected bool, got {type(value).__name__}")
    return b"\x01" if value else b"\x00"


_ENCODERS = {
    FieldType.INT: _enc_int,
    FieldType.STR: _enc_str,
    FieldType.ENUM: _enc_enum,
    FieldType.TIMESTAMP: _enc_timestamp,
    FieldType.MONEY: _enc_money,
    FieldType.BOOL: _enc_bool,
}


def canonical_bytes(kind, row: Mapping[str, Any]) -> bytes:
    """Return canon(kind, row)."""
    spec = layout(kind)
    tag = spec.kind.value.encode("ascii")
    out = [MAGIC, struct.pack(">B", len(tag)), tag, struct.pack(">H", spec.version)]

    for index, field in enumerate(spec.fields):
        if field.name not in row:
            if field.required:
                raise BadCanonicalization(f"{spec.kind.value}: missing required field {field.name}")
            continue
        value = row[field.name]
        out.append(struct.pack(">H", index))
        if value is None:
            if field.required:
                raise BadCanonicalization(f"{spec.kind.value}: required field {field.name} is null")
            out.append(b"\x00")
            continue
        out.append(b"\x01")
        out.append(_ENCODERS[field.type](field.name, value))

    return b"".join(out)


def compute_hash(kind, row: Mapping[str, Any]) -> str:
    """Return keccak256(canon(kind, row)) as 0x-prefixed lowercase hex."""
    return "0x" + bytes(Web3.keccak(canonical_bytes(kind, row))).hex()


def verify(kind, row: Mapping[str, Any], expected_hash: str) -> bool:
    """True when the row hashes to expected_hash. Pure, no I/O."""
    try:
        expected = hex32(expected_hash)
    except ValueError:
        return False
    return compute_hash(kind, row) == expected


def entity_id(kind, row: Mapping[str, Any]):
    """Value of the kind's id field, or None if the row does not carry it."""
    return row.get(layout(kind).id_field)
