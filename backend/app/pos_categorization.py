"""
Auto-categorization of synced POS sales.

Rules are evaluated here in one batch after a sync instead of by a per-row trigger:
the trigger stays suspended during the bulk write and this pass covers the rows the
run wrote.
"""

from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional


DEFAULT_CLASSIFY_LIMIT = 10000


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def _dec(v: Any) -> Optional[Decimal]:
    if v is None or v == "":
        return None
    return Decimal(str(v))


@dataclass(frozen=True)
class CategorizationRule:
    id: str
    category_id: str
    item_name_pattern: Optional[str] = None
    item_name_match_type: str = "contains"
    pos_category: Optional[str] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    priority: int = 0
    created_at: Optional[datetime] = None
    rule_name: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CategorizationRule":
        return cls(
            id=str(row["id"]),
            category_id=str(row["category_id"]),
            item_name_pattern=row.get("item_name_pattern"),
            item_name_match_type=(row.get("item_name_match_type") or "contains").strip().lower(),
            pos_category=row.get("pos_category"),
            amount_min=_dec(row.get("amount_min")),
            amount_max=_dec(row.get("amount_max")),
            priority=int(row.get("priority") or 0),
            created_at=row.get("created_at"),
            rule_name=row.get("rule_name") or "",
        )


def _name_matches(match_type: str, pattern: str, name: str) -> bool:
    p = pattern.lower()
    n = name.lower()
    if match_type == "exact":
        return n == p
    if match_type == "contains":
        return p in n
    if match_type == "starts_with":
        return n.startswith(p)
    if match_type == "ends_with":
        return n.endswith(p)
    if match_type == "regex":
        # Invalid patterns raise re.error; callers count the row as failed.
        return re.search(pattern, name, re.IGNORECASE) is not None
    raise ValueError(f"unknown item_name_match_type: {match_type}")


def rule_matches(rule: CategorizationRule, sale: Mapping[str, Any]) -> bool:
    name = sale.get("item_name") or ""
    amount = _dec(sale.get("total_price")) or Decimal("0")
    pos_category = sale.get("pos_category") or ""

    if rule.item_name_pattern is not None:
        if not _name_matches(rule.item_name_match_type, rule.item_name_pattern, name):
            return False
    if rule.pos_category is not None and pos_category.lower() != rule.pos_category.lower():
        return False
    if rule.amount_min is not None and abs(amount) < rule.amount_min:
        return False
    if rule.amount_max is not None and abs(amount) > rule.amount_max:
        return False
    return True


def _rule_order(rule: CategorizationRule):
    created = rule.created_at or datetime.max.replace(tzinfo=timezone.utc)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (-rule.priority, created)


def find_matching_rule(rules: Iterable[CategorizationRule], sale: Mapping[str, Any]) -> Optional[CategorizationRule]:
    """
    Highest priority wins; ties go to the oldest rule.
    """
    for rule in sorted(rules, key=_rule_order):
        if rule_matches(rule, sale):
            return rule
    return None


def load_pos_rules(cur, restaurant_id: str) -> list[CategorizationRule]:
    # Split rules need a manual split into child rows; the batch pass ignores them.
    cur.execute(
        """
        SELECT id, rule_name, category_id, item_name_pattern, item_name_match_type,
               pos_category, amount_min, amount_max, priority, created_at
        FROM categorization_rules
        WHERE restaurant_id = %s
          AND is_active = true
          AND auto_apply = true
          AND applies_to IN ('pos_sales', 'both')
          AND is_split_rule = false
          AND category_id IS NOT NULL
        ORDER BY priority DESC, created_at ASC
        """,
        (restaurant_id,),
    )
    return [CategorizationRule.from_row(r) for r in cur.fetchall()]


def apply_rules_to_synced_sales(
    conn,
    restaurant_id: str,
    sale_ids: Iterable[str],
    *,
    limit: int = DEFAULT_CLASSIFY_LIMIT,
) -> dict:
    """
    Categorize uncategorized `sale` rows among `sale_ids` with the restaurant's active
    auto-apply rules. Each row is applied in its own savepoint so a bad rule only
    leaves that row uncategorized.
    """
    ids = [str(i) for i in sale_ids if i is not None]
    if not ids:
        return {"applied": 0, "total": 0, "failed": 0}

    with conn.cursor() as cur:
        rules = load_pos_rules(cur, restaurant_id)
        if not rules:
            return {"applied": 0, "total": 0, "failed": 0}
        cur.execute(
            """
            SELECT id, item_name, total_price, pos_category
            FROM unified_sales
            WHERE restaurant_id = %s
              AND id = ANY(%s::uuid[])
              AND item_type = 'sale'
              AND category_id IS NULL
              AND parent_sale_id IS NULL
            ORDER BY sale_date, id
            LIMIT %s
            """,
            (restaurant_id, ids, limit),
        )
        sales = cur.fetchall()

    applied = 0
    failed = 0
    for sale in sales:
        rule = None
        try:
            rule = find_matching_rule(rules, sale)
            if rule is None:
                continue
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE unified_sales
                        SET category_id = %s,
                            is_categorized = true,
                            updated_at = now()
                        WHERE id = %s
                          AND category_id IS NULL
                        """,
                        (rule.category_id, sale["id"]),
                    )
                    cur.execute(
                        """
                        UPDATE categorization_rules
                        SET apply_count = apply_count + 1,
                            last_applied_at = now()
                        WHERE id = %s
                        """,
                        (rule.id,),
                    )
            applied += 1
        except Exception as ex:
            failed += 1
            _json_log(
                "warning",
                "pos_sync.categorize.error",
                restaurant_id=restaurant_id,
                sale_id=sale["id"],
                rule_id=rule.id if rule else None,
                error=str(ex),
            )
    return {"applied": applied, "total": len(sales), "failed": failed}
