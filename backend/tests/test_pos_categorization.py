import re
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from backend.app.pos_categorization import (
    CategorizationRule,
    apply_rules_to_synced_sales,
    find_matching_rule,
    rule_matches,
)


def _rule(rid="rule-1", pattern=None, match="contains", priority=0, created=None, **kw):
    return CategorizationRule(
        id=rid,
        category_id=kw.pop("category_id", "cat-" + rid),
        item_name_pattern=pattern,
        item_name_match_type=match,
        priority=priority,
        created_at=created,
        **kw,
    )


def _sale(name="Classic Burger", total="12.00", pos_category="Entrees"):
    return {"item_name": name, "total_price": Decimal(total), "pos_category": pos_category}


@pytest.mark.parametrize(
    "match,pattern,expected",
    [
        ("exact", "classic burger", True),
        ("exact", "burger", False),
        ("contains", "BURG", True),
        ("contains", "fries", False),
        ("starts_with", "classic", True),
        ("starts_with", "burger", False),
        ("ends_with", "BURGER", True),
        ("ends_with", "classic", False),
        ("regex", r"^class.*r$", True),
        ("regex", r"^burger", False),
    ],
)
def test_name_match_types_are_case_insensitive(match, pattern, expected):
    assert rule_matches(_rule(pattern=pattern, match=match), _sale()) is expected


def test_pos_category_and_amount_bounds():
    assert rule_matches(_rule(pos_category="entrees"), _sale()) is True
    assert rule_matches(_rule(pos_category="Drinks"), _sale()) is False
    assert rule_matches(_rule(amount_min=Decimal("10")), _sale()) is True
    assert rule_matches(_rule(amount_min=Decimal("12.01")), _sale()) is False
    assert rule_matches(_rule(amount_max=Decimal("11.99")), _sale()) is False
    # Bounds compare against the absolute amount.
    assert rule_matches(_rule(amount_min=Decimal("5"), amount_max=Decimal("15")), _sale(total="-12.00")) is True


def test_rule_without_conditions_matches_everything():
    assert rule_matches(_rule(), _sale(name="", total="0", pos_category=None)) is True


def test_invalid_regex_raises():
    with pytest.raises(re.error):
        rule_matches(_rule(pattern="([", match="regex"), _sale())


def test_highest_priority_wins_then_oldest():
    t1 = datetime(2026, 1, 1, tzinfo=timezone.utc)
    t2 = datetime(2026, 1, 2, tzinfo=timezone.utc)
    low = _rule("low", pattern="burger", priority=1, created=t1)
    high_new = _rule("high-new", pattern="burger", priority=5, created=t2)
    high_old = _rule("high-old", pattern="burger", priority=5, created=t1)
    other = _rule("other", pattern="salad", priority=99, created=t1)

    assert find_matching_rule([low, high_new, other, high_old], _sale()).id == "high-old"
    assert find_matching_rule([other], _sale()) is None


def test_rule_from_row_normalizes_fields():
    rule = CategorizationRule.from_row(
        {
            "id": "r",
            "category_id": "c",
            "item_name_pattern": "x",
            "item_name_match_type": " Exact ",
            "amount_min": "1.50",
            "priority": None,
        }
    )
    assert rule.item_name_match_type == "exact"
    assert rule.amount_min == Decimal("1.50")
    assert rule.amount_max is None
    assert rule.priority == 0


class _FakeCursor:
    def __init__(self, rules, sales, fail_sale_ids=()):
        self.rules = rules
        self.sales = sales
        self.fail_sale_ids = set(fail_sale_ids)
        self.rows = []
        self.executed = []
        self.categorized = {}
        self.rule_updates = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, params))
        if text.startswith("update unified_sales"):
            category_id, sale_id = params
            if sale_id in self.fail_sale_ids:
                raise RuntimeError("row locked")
            self.categorized[sale_id] = category_id
            return
        if text.startswith("update categorization_rules"):
            self.rule_updates.append(params[0])
            return
        if "from categorization_rules" in text:
            self.rows = list(self.rules)
            return
        if "from unified_sales" in text:
            self.rows = list(self.sales)
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchall(self):
        return list(self.rows)


class _FakeConn:
    def __init__(self, cur):
        self._cur = cur
        self.savepoints = 0

    def cursor(self):
        return self._cur

    @contextmanager
    def transaction(self):
        self.savepoints += 1
        yield


def test_apply_rules_categorizes_matches_and_isolates_failures():
    rules = [
        {"id": "rule-burger", "category_id": "cat-food", "item_name_pattern": "burger",
         "item_name_match_type": "contains", "priority": 10, "created_at": None},
    ]
    sales = [
        {"id": "s1", "item_name": "Classic Burger", "total_price": Decimal("12.00"), "pos_category": None},
        {"id": "s2", "item_name": "Water", "total_price": Decimal("2.00"), "pos_category": None},
        {"id": "s-bad", "item_name": "Veggie Burger", "total_price": Decimal("11.00"), "pos_category": None},
    ]
    cur = _FakeCursor(rules, sales, fail_sale_ids={"s-bad"})
    conn = _FakeConn(cur)

    out = apply_rules_to_synced_sales(conn, "r1", ["s1", "s2", "s-bad"], limit=100)

    assert out == {"applied": 1, "total": 3, "failed": 1}
    assert cur.categorized == {"s1": "cat-food"}
    assert cur.rule_updates == ["rule-burger"]
    assert conn.savepoints == 2

    select_sql, select_params = next((t, p) for t, p in cur.executed if "from unified_sales" in t)
    assert "item_type = 'sale'" in select_sql
    assert "category_id is null" in select_sql
    assert "parent_sale_id is null" in select_sql
    assert select_params == ("r1", ["s1", "s2", "s-bad"], 100)


def test_apply_rules_without_ids_runs_no_sql():
    cur = _FakeCursor([], [])
    assert apply_rules_to_synced_sales(_FakeConn(cur), "r1", []) == {"applied": 0, "total": 0, "failed": 0}
    assert cur.executed == []


def test_apply_rules_without_rules_skips_sales_scan():
    cur = _FakeCursor([], [{"id": "s1", "item_name": "x", "total_price": 1, "pos_category": None}])
    assert apply_rules_to_synced_sales(_FakeConn(cur), "r1", ["s1"]) == {"applied": 0, "total": 0, "failed": 0}
    assert all("from unified_sales" not in t for t, _ in cur.executed)
