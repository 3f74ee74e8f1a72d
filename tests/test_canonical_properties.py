"""
Property tests for the canonicalizer, over every kind.

Field order never changes the hash, changing any single field always does,
and a row verifies against its own hash whatever else the row carries.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from decimal import Decimal

import pytest
from hypothesis import given, strategies as st
from hypothesis.strategies import composite

from medchain_anchor import canonical
from medchain_anchor.canonical import FieldType
from medchain_anchor.schemas import Kind

KINDS = list(Kind)

# printable ASCII is already NFC, so a flipped low bit stays a distinct string
PRINTABLE = st.text(alphabet=st.characters(min_codepoint=0x20, max_codepoint=0x7E), max_size=40)

VALUES = {
    FieldType.INT: st.integers(min_value=-2**63, max_value=2**63 - 1),
    FieldType.STR: PRINTABLE,
    FieldType.ENUM: PRINTABLE,
    FieldType.TIMESTAMP: st.integers(min_value=-2**40, max_value=2**40),
    FieldType.MONEY: st.integers(min_value=-10**12, max_value=10**12).map(lambda c: Decimal(c).scaleb(-2)),
    FieldType.BOOL: st.booleans(),
}


@composite
def rows(draw, kind):
    """A valid row of `kind`; each optional field is set, null or absent."""
    row = {}
    for field in canonical.layout(kind).fields:
        if not field.required:
            presence = draw(st.sampled_from(["set", "null", "absent"]))
            if presence == "absent":
                continue
            if presence == "null":
                row[field.name] = None
                continue
        row[field.name] = draw(VALUES[field.type])
    return row


def perturbed(field, row: dict) -> dict:
    """`row` with the smallest change to one field that its encoding can see."""
    changed = dict(row)
    if field.name not in row:
        changed[field.name] = None
        return changed
    value = row[field.name]
    if value is None:
        del changed[field.name]
    elif field.type == FieldType.BOOL:
        changed[field.name] = not value
    elif field.type in (FieldType.INT, FieldType.TIMESTAMP):
        changed[field.name] = value ^ 1
    elif field.type == FieldType.MONEY:
        changed[field.name] = value + Decimal("0.01")
    elif value:
        changed[field.name] = value[:-1] + chr(ord(value[-1]) ^ 1)
    else:
        changed[field.name] = " "
    return changed


@pytest.mark.parametrize("kind", KINDS)
@given(data=st.data())
def test_field_order_never_changes_the_hash(kind, data):
    row = data.draw(rows(kind))
    shuffled = dict(data.draw(st.permutations(list(row.items()))))
    assert canonical.compute_hash(kind, shuffled) == canonical.compute_hash(kind, row)


@pytest.mark.parametrize("kind", KINDS)
@given(data=st.data())
def test_changing_any_field_changes_the_hash(kind, data):
    row = data.draw(rows(kind))
    original = canonical.compute_hash(kind, row)
    for field in canonical.layout(kind).fields:
        if field.required and field.name not in row:
            continue
        changed = perturbed(field, row)
        assert canonical.compute_hash(kind, changed) != original, field.name


@pytest.mark.parametrize("kind", KINDS)
@given(data=st.data())
def test_row_verifies_against_its_own_hash_only(kind, data):
    row = data.draw(rows(kind))
    h = canonical.compute_hash(kind, row)
    noisy = dict(row, content_hash=h, anchor_state="CONFIRMED")
    assert canonical.verify(kind, noisy, h)

    position = data.draw(st.integers(min_value=2, max_value=65))
    digit = "0" if h[position] != "0" else "1"
    assert not canonical.verify(kind, row, h[:position] + digit + h[position + 1:])
