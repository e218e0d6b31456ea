#!/usr/bin/env python3
"""
Reconcile replicated POS orders, items and payments into `unified_sales`.

One run for one restaurant is one transaction:
  1) authorize the caller, take the per-restaurant advisory lock
  2) load source facts for the window (full history, explicit range, or incremental)
  3) delete ledger rows the current source state no longer justifies
  4) bulk upsert the generated rows and categorize the sale rows written, with the
     per-row triggers suspended
  5) refresh `daily_sales` for every date a row left, landed on or was deleted from

Any failure rolls the whole window back.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import psycopg
from psycopg.rows import dict_row

from backend.app.config import settings
from backend.app.pos_categorization import apply_rules_to_synced_sales
from backend.app.pos_ledger import (
    LedgerEntry,
    SourceOrder,
    SourceOrderItem,
    SourcePayment,
    collapse_entries,
    norm_status,
    order_ledger_entries,
    order_stale_keys,
    payment_ledger_entries,
    payment_stale_keys,
    to_decimal,
)
from backend.app.restaurant_access import SYSTEM_CALLER_ID, assert_restaurant_access
from backend.app.sync_window import SyncWindow, incremental_window, resolve_sync_window


DB_URL_DEFAULT = os.getenv("DATABASE_URL") or "postgresql://localhost/pos_ledger"
DEFAULT_POS_SYSTEM = "toast"
DAILY_SALES_SOURCE = "unified_pos"
SKIP_TRIGGERS_SETTING = "app.skip_unified_sales_triggers"
LOCK_PREFIX = "pos_ledger_sync:"


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def connect(db_url: str):
    return psycopg.connect(db_url, row_factory=dict_row)


@dataclass
class SyncResult:
    restaurant_id: str
    pos_system: str
    window: SyncWindow
    deleted: int = 0
    written: int = 0
    categorized: dict = field(default_factory=lambda: {"applied": 0, "total": 0, "failed": 0})
    aggregated_days: int = 0

    @property
    def synced(self) -> int:
        return self.deleted + self.written

    def as_dict(self) -> dict:
        return {
            "restaurant_id": self.restaurant_id,
            "pos_system": self.pos_system,
            "mode": self.window.mode,
            "window": self.window.as_dict(),
            "synced": self.synced,
            "deleted": self.deleted,
            "written": self.written,
            "categorized": self.categorized.get("applied", 0),
            "categorize_failed": self.categorized.get("failed", 0),
            "aggregated_days": self.aggregated_days,
        }


def _raw(v: Any) -> dict:
    if v is None:
        return {}
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except ValueError:
            return {}
    return v if isinstance(v, dict) else {}


def _window_clause(column: str, window: SyncWindow) -> tuple[str, tuple]:
    if window.is_full:
        return "", ()
    return f"AND {column} BETWEEN %s AND %s", (window.start, window.end)


def order_from_row(restaurant_id: str, pos_system: str, row: dict) -> SourceOrder:
    return SourceOrder(
        restaurant_id=str(restaurant_id),
        pos_system=pos_system,
        external_order_id=str(row["external_order_id"]),
        order_date=row["order_date"],
        order_time=row.get("order_time"),
        total_amount=to_decimal(row.get("total_amount")),
        tax_amount=to_decimal(row.get("tax_amount")),
        discount_amount=to_decimal(row.get("discount_amount")),
        raw_data=_raw(row.get("raw_json")),
    )


def item_from_row(row: dict) -> SourceOrderItem:
    return SourceOrderItem(
        external_order_id=str(row["external_order_id"]),
        external_item_id=str(row["external_item_id"]),
        item_name=row.get("item_name") or "Unknown Item",
        quantity=to_decimal(row.get("quantity")),
        gross_amount=to_decimal(row.get("gross_amount")),
        net_amount=to_decimal(row.get("net_amount")),
        is_voided=bool(row.get("is_voided")),
        discount_amount=to_decimal(row.get("discount_amount")),
        pos_category=row.get("menu_category"),
        raw_data=_raw(row.get("raw_json")),
    )


def payment_from_row(row: dict) -> SourcePayment:
    raw = _raw(row.get("raw_json"))
    refund = raw.get("refund") if isinstance(raw.get("refund"), dict) else {}
    return SourcePayment(
        external_payment_id=str(row["external_payment_id"]),
        external_order_id=str(row["external_order_id"]),
        payment_date=row["payment_date"],
        payment_type=row.get("payment_type"),
        tip_amount=to_decimal(row.get("tip_amount")),
        status=norm_status(row.get("payment_status")),
        refund_status=norm_status(raw.get("refundStatus")) or "NONE",
        refund_amount_minor=to_decimal(refund.get("refundAmount")),
        raw_data=raw,
    )


def load_orders(cur, restaurant_id: str, pos_system: str, window: SyncWindow) -> list[SourceOrder]:
    clause, params = _window_clause("o.order_date", window)
    cur.execute(
        f"""
        SELECT o.external_order_id, o.order_date, o.order_time, o.total_amount,
               o.tax_amount, o.discount_amount, o.raw_json
        FROM pos_orders o
        WHERE o.restaurant_id = %s
          AND o.pos_system = %s
          {clause}
        ORDER BY o.order_date, o.external_order_id
        """,
        (restaurant_id, pos_system, *params),
    )
    return [order_from_row(restaurant_id, pos_system, r) for r in cur.fetchall()]


def load_order_items(cur, restaurant_id: str, pos_system: str, window: SyncWindow) -> list[SourceOrderItem]:
    # Inner join: items whose order has not been replicated yet wait for a later run.
    clause, params = _window_clause("o.order_date", window)
    cur.execute(
        f"""
        SELECT i.external_order_id, i.external_item_id, i.item_name, i.quantity,
               i.gross_amount, i.net_amount, i.is_voided, i.discount_amount,
               i.menu_category, i.raw_json
        FROM pos_order_items i
        JOIN pos_orders o
          ON o.restaurant_id = i.restaurant_id
         AND o.pos_system = i.pos_system
         AND o.external_order_id = i.external_order_id
        WHERE i.restaurant_id = %s
          AND i.pos_system = %s
          {clause}
        ORDER BY i.external_order_id, i.external_item_id
        """,
        (restaurant_id, pos_system, *params),
    )
    return [item_from_row(r) for r in cur.fetchall()]


def load_payments(cur, restaurant_id: str, pos_system: str, window: SyncWindow) -> list[SourcePayment]:
    clause, params = _window_clause("p.payment_date", window)
    cur.execute(
        f"""
        SELECT p.external_payment_id, p.external_order_id, p.payment_date,
               p.payment_type, p.tip_amount, p.payment_status, p.raw_json
        FROM pos_payments p
        WHERE p.restaurant_id = %s
          AND p.pos_system = %s
          {clause}
          AND EXISTS (
            SELECT 1 FROM pos_orders o
            WHERE o.restaurant_id = p.restaurant_id
              AND o.pos_system = p.pos_system
              AND o.external_order_id = p.external_order_id
          )
        ORDER BY p.payment_date, p.external_payment_id
        """,
        (restaurant_id, pos_system, *params),
    )
    return [payment_from_row(r) for r in cur.fetchall()]


def build_ledger(
    orders: Iterable[SourceOrder],
    items: Iterable[SourceOrderItem],
    payments: Iterable[SourcePayment],
    *,
    restaurant_id: str,
    pos_system: str,
) -> tuple[list[LedgerEntry], set[tuple[str, str]]]:
    """
    Returns (entries to upsert, stale (order_id, item_id) keys to delete).
    """
    items_by_order: dict[str, list[SourceOrderItem]] = {}
    for it in items:
        items_by_order.setdefault(it.external_order_id, []).append(it)

    entries: list[LedgerEntry] = []
    stale: set[tuple[str, str]] = set()
    for order in orders:
        order_items = items_by_order.get(order.external_order_id, [])
        entries.extend(order_ledger_entries(order, order_items))
        stale |= order_stale_keys(order, order_items)

    payments = list(payments)
    entries.extend(payment_ledger_entries(restaurant_id, pos_system, payments))
    stale |= payment_stale_keys(payments)

    entries = collapse_entries(entries)
    stale -= {(e.external_order_id, e.external_item_id) for e in entries}
    return entries, stale


def retract_stale_entries(
    cur,
    restaurant_id: str,
    pos_system: str,
    keys: Iterable[tuple[str, str]],
    window: SyncWindow,
) -> list[date]:
    keys = sorted(keys)
    if not keys:
        return []
    # Range runs never touch rows dated outside the window, stale or not.
    clause, params = _window_clause("sale_date", window)
    cur.execute(
        f"""
        DELETE FROM unified_sales
        WHERE restaurant_id = %s
          AND pos_system = %s
          AND parent_sale_id IS NULL
          AND (external_order_id, external_item_id) IN (
            SELECT * FROM unnest(%s::text[], %s::text[])
          )
          {clause}
        RETURNING sale_date
        """,
        (restaurant_id, pos_system, [k[0] for k in keys], [k[1] for k in keys], *params),
    )
    return [r["sale_date"] for r in cur.fetchall()]


def existing_entry_dates(cur, restaurant_id: str, pos_system: str, entries: Iterable[LedgerEntry]) -> list[date]:
    """
    Current sale dates of the rows the upsert is about to rewrite. A re-sync can move a
    row to another day; the day it leaves has to be re-aggregated too.
    """
    keys = sorted({(e.external_order_id, e.external_item_id) for e in entries})
    if not keys:
        return []
    cur.execute(
        """
        SELECT DISTINCT sale_date
        FROM unified_sales
        WHERE restaurant_id = %s
          AND pos_system = %s
          AND parent_sale_id IS NULL
          AND (external_order_id, external_item_id) IN (
            SELECT * FROM unnest(%s::text[], %s::text[])
          )
        """,
        (restaurant_id, pos_system, [k[0] for k in keys], [k[1] for k in keys]),
    )
    return [r["sale_date"] for r in cur.fetchall()]


def _entry_record(e: LedgerEntry) -> dict:
    return {
        "restaurant_id": e.restaurant_id,
        "pos_system": e.pos_system,
        "external_order_id": e.external_order_id,
        "external_item_id": e.external_item_id,
        "item_name": e.item_name,
        "quantity": e.quantity,
        "unit_price": e.unit_price,
        "total_price": e.total_price,
        "sale_date": e.sale_date,
        "sale_time": e.sale_time,
        "pos_category": e.pos_category,
        "item_type": e.item_type,
        "adjustment_type": e.adjustment_type,
        "raw_data": e.raw_data,
        "category_id": e.category_id,
        "is_categorized": e.is_categorized,
    }


def bulk_upsert_entries(cur, entries: Iterable[LedgerEntry]) -> list[dict]:
    """
    One set-based upsert for the whole run. POS fields are refreshed from the
    incoming row; category_id / is_categorized are kept when already set.
    """
    records = [_entry_record(e) for e in collapse_entries(entries)]
    if not records:
        return []
    cur.execute(
        """
        INSERT INTO unified_sales (
          restaurant_id, pos_system, external_order_id, external_item_id,
          item_name, quantity, unit_price, total_price, sale_date, sale_time,
          pos_category, item_type, adjustment_type, raw_data,
          category_id, is_categorized, synced_at
        )
        SELECT r.restaurant_id, r.pos_system, r.external_order_id, r.external_item_id,
               r.item_name, r.quantity, r.unit_price, r.total_price, r.sale_date, r.sale_time,
               r.pos_category, r.item_type, r.adjustment_type, COALESCE(r.raw_data, '{}'::jsonb),
               r.category_id, COALESCE(r.is_categorized, false), now()
        FROM jsonb_to_recordset(%s::jsonb) AS r(
          restaurant_id uuid, pos_system text, external_order_id text, external_item_id text,
          item_name text, quantity numeric, unit_price numeric, total_price numeric,
          sale_date date, sale_time time, pos_category text, item_type text,
          adjustment_type text, raw_data jsonb, category_id uuid, is_categorized boolean
        )
        ON CONFLICT (restaurant_id, pos_system, external_order_id, external_item_id)
          WHERE parent_sale_id IS NULL
        DO UPDATE SET
          item_name = EXCLUDED.item_name,
          quantity = EXCLUDED.quantity,
          unit_price = EXCLUDED.unit_price,
          total_price = EXCLUDED.total_price,
          sale_date = EXCLUDED.sale_date,
          sale_time = EXCLUDED.sale_time,
          pos_category = EXCLUDED.pos_category,
          item_type = EXCLUDED.item_type,
          adjustment_type = EXCLUDED.adjustment_type,
          raw_data = EXCLUDED.raw_data,
          category_id = COALESCE(unified_sales.category_id, EXCLUDED.category_id),
          is_categorized = CASE
            WHEN unified_sales.category_id IS NOT NULL THEN unified_sales.is_categorized
            ELSE EXCLUDED.is_categorized
          END,
          synced_at = EXCLUDED.synced_at,
          updated_at = now()
        RETURNING id, sale_date, item_type
        """,
        (json.dumps(records, default=str),),
    )
    return cur.fetchall()


def _set_skip_triggers(conn, enabled: bool):
    with conn.cursor() as cur:
        # Transaction-local, so it never outlives the sync transaction.
        cur.execute(
            "SELECT set_config(%s, %s, true)",
            (SKIP_TRIGGERS_SETTING, "true" if enabled else "false"),
        )


@contextmanager
def suspended_sale_triggers(conn):
    """
    Suspend the per-row categorization/aggregation triggers for the duration of the
    block. The block runs in a savepoint so the flag can be reset even when the
    write fails.
    """
    _set_skip_triggers(conn, True)
    try:
        with conn.transaction():
            yield
    finally:
        if not conn.closed:
            _set_skip_triggers(conn, False)


def aggregate_daily_sales(cur, restaurant_id: str, dates: Iterable[date]) -> int:
    """
    Recompute `daily_sales` for the given dates from top-level ledger rows. Dates that
    no longer have rows are written as zeros.
    """
    days = sorted(set(d for d in dates if d is not None))
    if not days:
        return 0
    cur.execute(
        """
        INSERT INTO daily_sales (
          restaurant_id, date, source, gross_revenue, discounts, voids, refunds,
          sales_tax, tips, transaction_count, updated_at
        )
        SELECT %s::uuid, d.day, %s,
               COALESCE(SUM(us.total_price) FILTER (WHERE us.item_type = 'sale'), 0),
               COALESCE(-SUM(us.total_price) FILTER (WHERE us.adjustment_type = 'discount'), 0),
               COALESCE(-SUM(us.total_price) FILTER (WHERE us.adjustment_type = 'void'), 0),
               COALESCE(-SUM(us.total_price) FILTER (WHERE us.adjustment_type = 'refund'), 0),
               COALESCE(SUM(us.total_price) FILTER (WHERE us.item_type = 'tax'), 0),
               COALESCE(SUM(us.total_price) FILTER (WHERE us.item_type = 'tip'), 0),
               COUNT(DISTINCT us.external_order_id) FILTER (WHERE us.item_type = 'sale'),
               now()
        FROM unnest(%s::date[]) AS d(day)
        LEFT JOIN unified_sales us
          ON us.restaurant_id = %s
         AND us.sale_date = d.day
         AND us.parent_sale_id IS NULL
        GROUP BY d.day
        ON CONFLICT (restaurant_id, date, source) DO UPDATE SET
          gross_revenue = EXCLUDED.gross_revenue,
          discounts = EXCLUDED.discounts,
          voids = EXCLUDED.voids,
          refunds = EXCLUDED.refunds,
          sales_tax = EXCLUDED.sales_tax,
          tips = EXCLUDED.tips,
          transaction_count = EXCLUDED.transaction_count,
          updated_at = now()
        """,
        (restaurant_id, DAILY_SALES_SOURCE, days, restaurant_id),
    )
    return len(days)


def sync_restaurant(
    conn,
    restaurant_id: str,
    *,
    caller_id: Optional[str],
    window: SyncWindow,
    pos_system: str = DEFAULT_POS_SYSTEM,
) -> SyncResult:
    """
    Reconcile one restaurant inside the caller's transaction. Raises SyncUnauthorized
    before touching source or ledger rows when the caller has no access.
    """
    started = time.monotonic()
    result = SyncResult(restaurant_id=str(restaurant_id), pos_system=pos_system, window=window)

    with conn.cursor() as cur:
        assert_restaurant_access(cur, caller_id, restaurant_id)
        # Single flight per restaurant; released with the transaction.
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (LOCK_PREFIX + str(restaurant_id),))

        _json_log(
            "info",
            "pos_sync.start",
            restaurant_id=restaurant_id,
            pos_system=pos_system,
            mode=window.mode,
            window=window.as_dict(),
        )

        orders = load_orders(cur, restaurant_id, pos_system, window)
        items = load_order_items(cur, restaurant_id, pos_system, window)
        payments = load_payments(cur, restaurant_id, pos_system, window)

    entries, stale = build_ledger(orders, items, payments, restaurant_id=str(restaurant_id), pos_system=pos_system)

    # Classifier updates run with the triggers suspended as well.
    with suspended_sale_triggers(conn):
        with conn.cursor() as cur:
            deleted_dates = retract_stale_entries(cur, restaurant_id, pos_system, stale, window)
            previous_dates = existing_entry_dates(cur, restaurant_id, pos_system, entries)
            written = bulk_upsert_entries(cur, entries)
        sale_ids = [r["id"] for r in written if r.get("item_type") == "sale"]
        result.categorized = apply_rules_to_synced_sales(
            conn, restaurant_id, sale_ids, limit=settings.pos_sync_classify_limit
        )
    result.deleted = len(deleted_dates)
    result.written = len(written)

    with conn.cursor() as cur:
        result.aggregated_days = aggregate_daily_sales(
            cur,
            restaurant_id,
            list(deleted_dates) + list(previous_dates) + [r["sale_date"] for r in written],
        )

    _json_log(
        "info",
        "pos_sync.done",
        restaurant_id=restaurant_id,
        pos_system=pos_system,
        mode=window.mode,
        window=window.as_dict(),
        deleted=result.deleted,
        written=result.written,
        categorized=result.categorized.get("applied", 0),
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return result


def run_sync(
    db_url: str,
    restaurant_id: str,
    start_date=None,
    end_date=None,
    *,
    caller_id: Optional[str],
    pos_system: str = DEFAULT_POS_SYSTEM,
) -> SyncResult:
    window = resolve_sync_window(start_date, end_date)
    with connect(db_url) as conn:
        return sync_restaurant(conn, restaurant_id, caller_id=caller_id, window=window, pos_system=pos_system)


def sync(
    db_url: str,
    restaurant_id: str,
    start_date=None,
    end_date=None,
    *,
    caller_id: Optional[str],
    pos_system: str = DEFAULT_POS_SYSTEM,
) -> int:
    """
    Full history when no dates are given, otherwise the inclusive [start_date, end_date]
    range. Returns rows retracted + rows written.
    """
    return run_sync(
        db_url, restaurant_id, start_date, end_date, caller_id=caller_id, pos_system=pos_system
    ).synced


def list_active_connections(db_url: str) -> list[dict]:
    with connect(db_url) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, restaurant_id, pos_system, last_sync_time, initial_sync_done
                FROM pos_connections
                WHERE is_active = true
                ORDER BY restaurant_id, pos_system
                """
            )
            return cur.fetchall()


def connection_window(conn_row: dict, now: datetime) -> SyncWindow:
    checkpoint = conn_row.get("last_sync_time") if conn_row.get("initial_sync_done") else None
    return incremental_window(
        checkpoint,
        now,
        lookback=timedelta(minutes=settings.pos_sync_lookback_minutes),
        default_lookback_days=settings.pos_sync_default_lookback_days,
    )


def sync_all(db_url: str, *, now: Optional[datetime] = None) -> list[dict]:
    """
    Incremental sync of every active POS connection as the system caller. Each
    connection runs in its own transaction; a failure is logged and reported but does
    not stop the others. Checkpoints are left to the scheduler.
    """
    now = now or datetime.now(timezone.utc)
    results = []
    for c in list_active_connections(db_url):
        rid = str(c["restaurant_id"])
        pos_system = c.get("pos_system") or DEFAULT_POS_SYSTEM
        window = connection_window(c, now)
        out = {
            "connection_id": str(c["id"]),
            "restaurant_id": rid,
            "pos_system": pos_system,
            "window": window.as_dict(),
            "ok": False,
            "synced": 0,
            "error": None,
        }
        try:
            with connect(db_url) as conn:
                res = sync_restaurant(conn, rid, caller_id=SYSTEM_CALLER_ID, window=window, pos_system=pos_system)
            out["ok"] = True
            out["synced"] = res.synced
        except Exception as ex:
            _json_log("error", "pos_sync.connection.error", connection_id=out["connection_id"], restaurant_id=rid, error=str(ex))
            traceback.print_exc(file=sys.stderr)
            out["error"] = str(ex)
        results.append(out)
    return results


def main():
    parser = argparse.ArgumentParser(description="Reconcile POS data into unified_sales")
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--restaurant", help="Restaurant UUID to sync")
    parser.add_argument("--start", help="Window start (YYYY-MM-DD), requires --end")
    parser.add_argument("--end", help="Window end (YYYY-MM-DD), requires --start")
    parser.add_argument("--pos-system", default=DEFAULT_POS_SYSTEM)
    parser.add_argument("--caller", default=SYSTEM_CALLER_ID, help="User id to authorize as")
    parser.add_argument("--all", action="store_true", help="Incremental sync of all active connections")
    args = parser.parse_args()

    if args.all:
        print(json.dumps(sync_all(args.db), default=str))
        return
    if not args.restaurant:
        parser.error("--restaurant or --all is required")
    res = run_sync(
        args.db,
        args.restaurant,
        args.start,
        args.end,
        caller_id=args.caller,
        pos_system=args.pos_system,
    )
    print(json.dumps(res.as_dict(), default=str))


if __name__ == "__main__":
    main()
