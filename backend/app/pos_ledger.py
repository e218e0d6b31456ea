"""
Unified sales ledger rules.

Source orders, items and payments replicated from a POS are turned into signed
`unified_sales` rows using a gross + offset model: the gross fact is always written
as-is and every adjustment (discount, void, refund) is its own negative row.

Everything here is pure: no cursor, no clock. The worker feeds it rows and writes
what it returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional


ITEM_SALE = "sale"
ITEM_DISCOUNT = "discount"
ITEM_TAX = "tax"
ITEM_TIP = "tip"
ITEM_REFUND = "refund"

# adjustment_type NULL marks a gross row.
ADJ_DISCOUNT = "discount"
ADJ_VOID = "void"
ADJ_TAX = "tax"
ADJ_TIP = "tip"
ADJ_REFUND = "refund"

SUFFIX_DISCOUNT = "_discount"
SUFFIX_VOID = "_void"
SUFFIX_TAX = "_tax"
SUFFIX_TIP = "_tip"
SUFFIX_REFUND = "_refund"

TIP_INELIGIBLE_STATUSES = frozenset({"DENIED", "VOIDED"})
REFUND_STATUSES = frozenset({"FULL", "PARTIAL"})

UNIT_Q = Decimal("0.0001")
MONEY_Q = Decimal("0.01")
MINOR_UNITS = Decimal("100")

# Refreshed from the POS on every sync.
POS_OWNED_FIELDS = (
    "item_name",
    "quantity",
    "unit_price",
    "total_price",
    "sale_date",
    "sale_time",
    "pos_category",
    "item_type",
    "adjustment_type",
    "raw_data",
)
# Owned by users / the classifier: only filled in when currently unset.
USER_OWNED_FIELDS = ("category_id", "is_categorized")


def to_decimal(v: Any) -> Optional[Decimal]:
    if v is None or v == "":
        return None
    if isinstance(v, Decimal):
        return v
    try:
        return Decimal(str(v))
    except InvalidOperation:
        return None


def norm_status(v: Optional[str]) -> str:
    return (v or "").strip().upper()


def q_unit(v: Decimal) -> Decimal:
    return v.quantize(UNIT_Q, rounding=ROUND_HALF_UP)


def q_money(v: Decimal) -> Decimal:
    return v.quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def _positive(v: Optional[Decimal]) -> bool:
    return v is not None and v > 0


def derive_unit_price(line_total: Decimal, quantity: Optional[Decimal]) -> Optional[Decimal]:
    # POS line amounts are already multiplied out: divide, never multiply.
    if quantity is None or quantity == 0:
        return None
    return q_unit(line_total / quantity)


@dataclass(frozen=True)
class SourceOrder:
    restaurant_id: str
    pos_system: str
    external_order_id: str
    order_date: date
    order_time: Optional[time] = None
    total_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    raw_data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SourceOrderItem:
    external_order_id: str
    external_item_id: str
    item_name: str
    quantity: Optional[Decimal]
    gross_amount: Optional[Decimal]
    net_amount: Optional[Decimal] = None
    is_voided: bool = False
    discount_amount: Optional[Decimal] = None
    pos_category: Optional[str] = None
    raw_data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SourcePayment:
    external_payment_id: str
    external_order_id: str
    payment_date: date
    payment_type: Optional[str] = None
    tip_amount: Optional[Decimal] = None
    status: str = ""
    refund_status: str = "NONE"
    refund_amount_minor: Optional[Decimal] = None
    raw_data: dict = field(default_factory=dict)

    @property
    def tip_eligible(self) -> bool:
        return norm_status(self.status) not in TIP_INELIGIBLE_STATUSES

    @property
    def is_refunded(self) -> bool:
        return norm_status(self.refund_status) in REFUND_STATUSES and _positive(self.refund_amount_minor)


@dataclass(frozen=True)
class LedgerEntry:
    restaurant_id: str
    pos_system: str
    external_order_id: str
    external_item_id: str
    item_name: str
    item_type: str
    adjustment_type: Optional[str]
    quantity: Decimal
    unit_price: Optional[Decimal]
    total_price: Decimal
    sale_date: date
    sale_time: Optional[time] = None
    pos_category: Optional[str] = None
    raw_data: dict = field(default_factory=dict)
    category_id: Optional[str] = None
    is_categorized: bool = False
    parent_sale_id: Optional[str] = None

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        return (self.restaurant_id, self.pos_system, self.external_order_id, self.external_item_id)

    @property
    def is_offset(self) -> bool:
        return self.adjustment_type in (ADJ_DISCOUNT, ADJ_VOID, ADJ_REFUND)


def order_ledger_entries(order: SourceOrder, items: Iterable[SourceOrderItem]) -> list[LedgerEntry]:
    """
    Sale / discount / void rows for each item plus the order's tax row.
    Items that belong to another order are ignored.
    """
    base = {
        "restaurant_id": order.restaurant_id,
        "pos_system": order.pos_system,
        "external_order_id": order.external_order_id,
        "sale_date": order.order_date,
        "sale_time": order.order_time,
    }
    out: list[LedgerEntry] = []
    for it in items:
        if it.external_order_id != order.external_order_id:
            continue
        gross = it.gross_amount
        # A missing quantity counts as one unit for both the stored quantity and the price.
        qty = it.quantity if it.quantity is not None else Decimal("1")
        common = dict(base, quantity=qty, pos_category=it.pos_category, raw_data=it.raw_data)

        if it.is_voided:
            if _positive(gross):
                out.append(
                    LedgerEntry(
                        external_item_id=it.external_item_id + SUFFIX_VOID,
                        item_name=f"Void - {it.item_name}",
                        item_type=ITEM_DISCOUNT,
                        adjustment_type=ADJ_VOID,
                        unit_price=derive_unit_price(-gross, qty),
                        total_price=-gross,
                        **common,
                    )
                )
            continue

        if _positive(gross):
            out.append(
                LedgerEntry(
                    external_item_id=it.external_item_id,
                    item_name=it.item_name,
                    item_type=ITEM_SALE,
                    adjustment_type=None,
                    unit_price=derive_unit_price(gross, qty),
                    total_price=gross,
                    **common,
                )
            )
        if _positive(it.discount_amount):
            disc = it.discount_amount
            out.append(
                LedgerEntry(
                    external_item_id=it.external_item_id + SUFFIX_DISCOUNT,
                    item_name=f"Discount - {it.item_name}",
                    item_type=ITEM_DISCOUNT,
                    adjustment_type=ADJ_DISCOUNT,
                    unit_price=derive_unit_price(-disc, qty),
                    total_price=-disc,
                    **common,
                )
            )

    if _positive(order.tax_amount):
        out.append(
            LedgerEntry(
                external_item_id=order.external_order_id + SUFFIX_TAX,
                item_name="Sales Tax",
                item_type=ITEM_TAX,
                adjustment_type=ADJ_TAX,
                quantity=Decimal("1"),
                unit_price=order.tax_amount,
                total_price=order.tax_amount,
                raw_data=order.raw_data,
                **base,
            )
        )
    return out


def payment_ledger_entries(restaurant_id: str, pos_system: str, payments: Iterable[SourcePayment]) -> list[LedgerEntry]:
    out: list[LedgerEntry] = []
    for p in payments:
        label = p.payment_type or "Unknown"
        common = {
            "restaurant_id": restaurant_id,
            "pos_system": pos_system,
            "external_order_id": p.external_order_id,
            "quantity": Decimal("1"),
            "sale_date": p.payment_date,
            "sale_time": None,
            "raw_data": p.raw_data,
        }
        if p.tip_eligible and _positive(p.tip_amount):
            out.append(
                LedgerEntry(
                    external_item_id=p.external_payment_id + SUFFIX_TIP,
                    item_name=f"Tip - {label}",
                    item_type=ITEM_TIP,
                    adjustment_type=ADJ_TIP,
                    unit_price=p.tip_amount,
                    total_price=p.tip_amount,
                    **common,
                )
            )
        if p.is_refunded:
            amount = -q_money(abs(p.refund_amount_minor) / MINOR_UNITS)
            out.append(
                LedgerEntry(
                    external_item_id=p.external_payment_id + SUFFIX_REFUND,
                    item_name=f"Refund - {label}",
                    item_type=ITEM_REFUND,
                    adjustment_type=ADJ_REFUND,
                    unit_price=amount,
                    total_price=amount,
                    **common,
                )
            )
    return out


def generate_ledger_entries(
    order: SourceOrder,
    items: Iterable[SourceOrderItem],
    payments: Iterable[SourcePayment],
) -> list[LedgerEntry]:
    entries = order_ledger_entries(order, items)
    own_payments = [p for p in payments if p.external_order_id == order.external_order_id]
    entries.extend(payment_ledger_entries(order.restaurant_id, order.pos_system, own_payments))
    return entries


def order_stale_keys(order: SourceOrder, items: Iterable[SourceOrderItem]) -> set[tuple[str, str]]:
    """
    (external_order_id, external_item_id) of rows that the current item/order state no
    longer justifies. Deleting a key that was never written is harmless.
    """
    oid = order.external_order_id
    stale: set[tuple[str, str]] = set()
    for it in items:
        if it.external_order_id != oid:
            continue
        iid = it.external_item_id
        has_gross = _positive(it.gross_amount)
        if it.is_voided or not has_gross:
            stale.add((oid, iid))
        # The void offset supersedes any discount on a voided item.
        if it.is_voided or not _positive(it.discount_amount):
            stale.add((oid, iid + SUFFIX_DISCOUNT))
        if not it.is_voided or not has_gross:
            stale.add((oid, iid + SUFFIX_VOID))
    if not _positive(order.tax_amount):
        stale.add((oid, oid + SUFFIX_TAX))
    return stale


def payment_stale_keys(payments: Iterable[SourcePayment]) -> set[tuple[str, str]]:
    stale: set[tuple[str, str]] = set()
    for p in payments:
        if not p.tip_eligible or not _positive(p.tip_amount):
            stale.add((p.external_order_id, p.external_payment_id + SUFFIX_TIP))
        if not p.is_refunded:
            stale.add((p.external_order_id, p.external_payment_id + SUFFIX_REFUND))
    return stale


def stale_entry_keys(
    order: SourceOrder,
    items: Iterable[SourceOrderItem],
    payments: Iterable[SourcePayment],
) -> set[tuple[str, str]]:
    own_payments = [p for p in payments if p.external_order_id == order.external_order_id]
    return order_stale_keys(order, items) | payment_stale_keys(own_payments)


def merge_ledger_entry(existing: LedgerEntry, incoming: LedgerEntry) -> LedgerEntry:
    """
    Keep-if-set merge: POS fields always come from `incoming`, user fields survive when
    the existing row is already categorized. Mirrors the ON CONFLICT clause of the
    bulk upsert.
    """
    if existing.natural_key != incoming.natural_key:
        raise ValueError("cannot merge ledger entries with different natural keys")
    patch = {name: getattr(incoming, name) for name in POS_OWNED_FIELDS}
    if existing.category_id is not None:
        for name in USER_OWNED_FIELDS:
            patch[name] = getattr(existing, name)
    else:
        for name in USER_OWNED_FIELDS:
            patch[name] = getattr(incoming, name)
    return replace(existing, **patch)


def collapse_entries(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    # A single INSERT .. ON CONFLICT DO UPDATE cannot touch the same key twice.
    by_key: dict[tuple[str, str, str, str], LedgerEntry] = {}
    for e in entries:
        prev = by_key.get(e.natural_key)
        by_key[e.natural_key] = merge_ledger_entry(prev, e) if prev is not None else e
    return list(by_key.values())
