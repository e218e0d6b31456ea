from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from backend.app.pos_ledger import (
    POS_OWNED_FIELDS,
    USER_OWNED_FIELDS,
    LedgerEntry,
    collapse_entries,
    merge_ledger_entry,
)


def _entry(**overrides):
    base = dict(
        restaurant_id="r1",
        pos_system="toast",
        external_order_id="o1",
        external_item_id="i1",
        item_name="Burger",
        item_type="sale",
        adjustment_type=None,
        quantity=Decimal("1"),
        unit_price=Decimal("12.0000"),
        total_price=Decimal("12.00"),
        sale_date=date(2026, 2, 10),
    )
    base.update(overrides)
    return LedgerEntry(**base)


def test_user_owned_fields_are_exactly_the_classification_fields():
    assert USER_OWNED_FIELDS == ("category_id", "is_categorized")
    assert not set(USER_OWNED_FIELDS) & set(POS_OWNED_FIELDS)


def test_rename_keeps_existing_category():
    existing = _entry(category_id="cat-food", is_categorized=True)
    incoming = _entry(item_name="Cheeseburger", total_price=Decimal("13.50"))

    merged = merge_ledger_entry(existing, incoming)

    assert merged.item_name == "Cheeseburger"
    assert merged.total_price == Decimal("13.50")
    assert merged.category_id == "cat-food"
    assert merged.is_categorized is True


def test_uncategorized_row_takes_incoming_classification():
    merged = merge_ledger_entry(_entry(), _entry(category_id="cat-bev", is_categorized=True))
    assert merged.category_id == "cat-bev"
    assert merged.is_categorized is True

    merged = merge_ledger_entry(_entry(), _entry())
    assert merged.category_id is None
    assert merged.is_categorized is False


def test_merge_is_idempotent():
    existing = _entry(category_id="cat-food", is_categorized=True)
    incoming = _entry(item_name="Burger Deluxe")
    once = merge_ledger_entry(existing, incoming)
    twice = merge_ledger_entry(once, incoming)
    assert once == twice


def test_merge_rejects_different_keys():
    with pytest.raises(ValueError):
        merge_ledger_entry(_entry(), _entry(external_item_id="i2"))


def test_collapse_entries_dedupes_by_natural_key():
    a = _entry()
    b = replace(a, item_name="Burger v2")
    c = _entry(external_item_id="i2")

    out = collapse_entries([a, b, c])

    assert len(out) == 2
    by_id = {e.external_item_id: e for e in out}
    assert by_id["i1"].item_name == "Burger v2"
    assert by_id["i2"] == c
