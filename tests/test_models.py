"""
Table definitions and the PostgreSQL DDL compiled from them (no database needed).
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from medchain_anchor.models import KIND_MODELS, LedgerRow, schema_statements, table_for
from medchain_anchor.schemas import Kind


def test_every_kind_has_a_table_with_integrity_columns():
    assert set(KIND_MODELS) == set(Kind)
    for model in KIND_MODELS.values():
        columns = model.__table__.columns
        for name in ("content_hash", "tx_hash", "anchor_state", "last_synced_at"):
            assert name in columns


def test_table_for():
    assert table_for(Kind.MEDICINE) == ("medicines", "medicine_id")
    assert table_for(Kind.RELEASE) == ("medicine_releases", "release_id")
    assert table_for(Kind.REMOVAL) == ("stock_removals", "removal_id")


def test_ddl_contains_partial_unique_indexes():
    ddl = "\n".join(schema_statements())
    assert "CREATE TABLE IF NOT EXISTS anchor_ledger" in ddl
    assert "CREATE TABLE IF NOT EXISTS anchor_watermarks" in ddl
    assert "CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_in_flight" in ddl
    assert "WHERE status IN ('PENDING','SUBMITTED')" in ddl
    assert "CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_event" in ddl
    assert "WHERE tx_hash IS NOT NULL" in ddl
    assert "JSONB" in ddl


def test_ledger_columns_match_entry_fields():
    from medchain_anchor.schemas import LedgerEntry
    assert set(LedgerRow.__table__.columns.keys()) == set(LedgerEntry.model_fields)
