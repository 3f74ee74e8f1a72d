"""
Database models for the anchoring core.

Domain tables (medicines, stocks, releases, ...) are owned by the CRUD
services; they are declared here only with the columns the core reads
(the canonical fields) and writes (the four integrity columns).

Core-owned tables:
  anchor_ledger      - one row per submission attempt or observed event
  anchor_watermarks  - highest fully ingested block per (contract, event)

The PostgreSQL DDL is compiled from these models (schema_statements) and
executed by db.init_db through asyncpg.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, Index,
    Integer, Numeric, String, Text, UniqueConstraint, text,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.schema import CreateIndex, CreateTable

from .schemas import Kind


class Base(DeclarativeBase):
    pass


def _now():
    return datetime.now(timezone.utc)


class IntegrityColumns:
    """The integrity columns every anchored table carries."""
    content_hash   = Column(String(66), nullable=True)
    tx_hash        = Column(String(66), nullable=True)
    anchor_state   = Column(String(16), nullable=False, default="NONE", server_default="NONE")
    last_synced_at = Column(DateTime(timezone=True), nullable=True)


#  Domain tables (canonical fields + integrity columns)

class Medicine(IntegrityColumns, Base):
    __tablename__ = "medicines"

    medicine_id  = Column(Integer, primary_key=True)
    name         = Column(String(255), nullable=False)
    generic_name = Column(String(255))
    dosage_form  = Column(String(100))
    strength     = Column(String(100))
    manufacturer = Column(String(255))
    category     = Column(String(100))
    barangay     = Column(String(40), nullable=False, index=True)
    created_at   = Column(DateTime(timezone=True), nullable=False, default=_now)


class Stock(IntegrityColumns, Base):
    __tablename__ = "stocks"

    stock_id         = Column(Integer, primary_key=True)
    medicine_id      = Column(Integer, nullable=False, index=True)
    batch_number     = Column(String(100), nullable=False)
    quantity         = Column(Integer, nullable=False)
    unit_cost        = Column(Numeric(10, 2))
    total_cost       = Column(Numeric(12, 2))
    supplier_name    = Column(String(255))
    date_received    = Column(DateTime(timezone=True), nullable=False)
    expiry_date      = Column(DateTime(timezone=True), nullable=False)
    storage_location = Column(String(100))
    barangay         = Column(String(40))


class StockTransaction(IntegrityColumns, Base):
    __tablename__ = "stock_transactions"

    transaction_id   = Column(Integer, primary_key=True)
    stock_id         = Column(Integer, nullable=False, index=True)
    transaction_type = Column(String(40), nullable=False)
    quantity_changed = Column(Integer, nullable=False)
    quantity_before  = Column(Integer, nullable=False)
    quantity_after   = Column(Integer, nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    notes            = Column(Text)


class Release(IntegrityColumns, Base):
    __tablename__ = "medicine_releases"

    release_id          = Column(Integer, primary_key=True)
    medicine_id         = Column(Integer, nullable=False, index=True)
    stock_id            = Column(Integer, nullable=False)
    resident_id         = Column(Integer)
    resident_name       = Column(String(255), nullable=False)
    quantity_released   = Column(Integer, nullable=False)
    date_released       = Column(DateTime(timezone=True), nullable=False)
    prescription_number = Column(String(100))
    prescribing_doctor  = Column(String(255))
    dosage_instructions = Column(Text)
    concern             = Column(Text)
    notes               = Column(Text)


class Removal(IntegrityColumns, Base):
    __tablename__ = "stock_removals"

    removal_id       = Column(Integer, primary_key=True)
    stock_id         = Column(Integer, nullable=False)
    medicine_id      = Column(Integer, nullable=False, index=True)
    quantity_removed = Column(Integer, nullable=False)
    reason           = Column(String(40), nullable=False)
    date_removed     = Column(DateTime(timezone=True), nullable=False)
    notes            = Column(Text)


class User(IntegrityColumns, Base):
    __tablename__ = "users"

    user_id           = Column(Integer, primary_key=True)
    wallet_address    = Column(String(42), nullable=False, unique=True)
    full_name         = Column(String(255), nullable=False)
    email             = Column(String(255))
    role              = Column(String(32), nullable=False)
    assigned_barangay = Column(String(40))


class Resident(IntegrityColumns, Base):
    __tablename__ = "residents"

    resident_id       = Column(Integer, primary_key=True)
    first_name        = Column(String(100), nullable=False)
    middle_name       = Column(String(100))
    last_name         = Column(String(100), nullable=False)
    date_of_birth     = Column(DateTime(timezone=True))
    gender            = Column(String(16))
    barangay          = Column(String(40), nullable=False, index=True)
    address           = Column(Text)
    is_senior_citizen = Column(Boolean)
    is_pregnant       = Column(Boolean)


KIND_MODELS = {
    Kind.MEDICINE: Medicine,
    Kind.STOCK: Stock,
    Kind.STOCK_TRANSACTION: StockTransaction,
    Kind.RELEASE: Release,
    Kind.REMOVAL: Removal,
    Kind.USER: User,
    Kind.RESIDENT: Resident,
}


def table_for(kind) -> tuple[str, str]:
    """Return (table name, primary key column) for a kind."""
    model = KIND_MODELS[Kind(kind)]
    pk = model.__table__.primary_key.columns.values()[0]
    return model.__tablename__, pk.name


#  Core-owned tables

class LedgerRow(Base):
    """Append-mostly log of anchoring attempts and observed contract events."""
    __tablename__ = "anchor_ledger"

    ledger_id        = Column(BigInteger, primary_key=True, autoincrement=True)
    kind             = Column(String(24), nullable=False)
    entity_id        = Column(BigInteger, nullable=False)
    action           = Column(String(8), nullable=False)
    submitted_hash   = Column(String(66), nullable=True)
    tx_hash          = Column(String(66), nullable=True, index=True)
    raw_tx           = Column(Text, nullable=True)
    block_number     = Column(BigInteger, nullable=True)
    block_hash       = Column(String(66), nullable=True)
    log_index        = Column(Integer, nullable=True)
    from_address     = Column(String(42), nullable=True)
    gas_used         = Column(BigInteger, nullable=True)
    status           = Column(String(16), nullable=False, default="PENDING")
    tombstone        = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    origin           = Column(String(16), nullable=False, default="PIPELINE")
    contract_address = Column(String(42), nullable=True)
    event_payload    = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    error            = Column(Text, nullable=True)
    created_at       = Column(DateTime(timezone=True), nullable=False, default=_now,
                              server_default=text("now()"))
    confirmed_at     = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("action IN ('STORE','UPDATE','DELETE')", name="ck_ledger_action"),
        CheckConstraint(
            "status IN ('PENDING','SUBMITTED','CONFIRMED','FAILED','ORPHANED')",
            name="ck_ledger_status",
        ),
        CheckConstraint("from_address IS NULL OR from_address = lower(from_address)",
                        name="ck_ledger_from_lower"),
        # at most one in-flight submission per entity
        Index("uq_ledger_in_flight", "kind", "entity_id", unique=True,
              postgresql_where=text("status IN ('PENDING','SUBMITTED')")),
        # the same on-chain event is recorded once
        Index("uq_ledger_event", "tx_hash", "kind", "entity_id", "action", unique=True,
              postgresql_where=text("tx_hash IS NOT NULL")),
        Index("ix_ledger_entity", "kind", "entity_id", "ledger_id"),
        Index("ix_ledger_status_block", "status", "block_number"),
    )

    def __repr__(self) -> str:
        return (f"<LedgerRow {self.ledger_id} {self.kind}:{self.entity_id} "
                f"{self.action} status={self.status}>")


class Watermark(Base):
    __tablename__ = "anchor_watermarks"

    id               = Column(Integer, primary_key=True, autoincrement=True)
    contract_address = Column(String(42), nullable=False)
    event_name       = Column(String(64), nullable=False)
    last_block       = Column(BigInteger, nullable=False)
    last_block_hash  = Column(String(66), nullable=True)
    updated_at       = Column(DateTime(timezone=True), nullable=False, default=_now,
                              server_default=text("now()"))

    __table_args__ = (
        UniqueConstraint("contract_address", "event_name", name="uq_watermark_event"),
    )


def schema_statements() -> list[str]:
    """CREATE TABLE / CREATE INDEX statements for PostgreSQL, idempotent."""
    dialect = postgresql.dialect()
    statements = []
    for table in Base.metadata.sorted_tables:
        statements.append(str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)))
        for index in sorted(table.indexes, key=lambda i: i.name):
            statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)))
    return statements
