# services/order_upsert.py
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

import models
from crud import order as crud_order
from services.line_item_reconciler import reconcile
from services.order_normalizer import LineItemRecord, NormalizedOrder
from utils import get_logger, to_float

logger = get_logger("order-upsert")

TOTAL_EPSILON = 0.01

INSERTED = "inserted"
UPDATED = "updated"

# Refreshed from Shopify on every sync. Courier assignment, manual balance,
# internal comment and courier edit fields are never in this set.
SYNCED_FIELDS = (
    "shopify_order_number", "shopify_order_name",
    "customer_name", "customer_email", "customer_id", "customer_phone", "mobile_number",
    "address", "shipping_address", "billing_address", "shipping_city", "billing_city",
    "shipping_country", "billing_country", "shipping_zip", "billing_zip",
    "subtotal_price", "total_tax", "total_discounts", "total_shipping_price", "currency",
    "total_price", "total_paid",
    "shopify_cancelled_at", "shopify_closed_at", "cancel_reason",
    "financial_status", "payment_gateway_names", "payment_transactions",
    "fulfillment_status", "shipping_method", "tracking_number", "tracking_url",
    "product_images", "order_tags", "order_note", "customer_note", "notes",
    "shopify_created_at", "shopify_updated_at", "shopify_raw_data",
)

COURIER_EDIT_FIELDS = ("delivery_fee", "partial_paid_amount", "collected_by", "payment_sub_type", "internal_comment")


class OrderLocks:
    """In-process lock per Shopify order id around the read-merge-write section."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: Optional[str]) -> Iterator[None]:
        if key is None:
            yield
            return
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


def has_courier_edits(order: models.Order) -> bool:
    return order.status in models.PROCESSED_STATUSES or any(
        getattr(order, name) not in (None, "", 0) for name in COURIER_EDIT_FIELDS
    )


def compute_balance(
    total: float,
    paid: float,
    upstream_outstanding: float,
    manual_balance: Optional[float] = None,
    total_overridden: bool = False,
) -> float:
    if manual_balance is not None:
        balance = to_float(manual_balance)
    elif total_overridden:
        balance = total - paid
    else:
        balance = upstream_outstanding
    return round(max(0.0, balance), 2)


def is_manual_total(existing_total: Any, upstream_total: float) -> bool:
    existing = to_float(existing_total)
    return existing != 0 and round(abs(existing - upstream_total), 2) > TOTAL_EPSILON


def _write_items(db: Session, order: models.Order, records: List[LineItemRecord]) -> None:
    """Update stored rows in place by id, insert the rest. Rows are never deleted here."""
    rows_by_id = {row.id: row for row in order.items}
    for position, record in enumerate(records):
        values = record.row_values()
        values["position"] = position
        row = rows_by_id.get(record.id) if record.id is not None else None
        if row is None:
            row = models.OrderItem(**values)
            order.items.append(row)
        else:
            for name, value in values.items():
                if getattr(row, name) != value:
                    setattr(row, name, value)


def _insert(db: Session, normalized: NormalizedOrder) -> models.Order:
    fields = dict(normalized.fields)
    fields["balance"] = compute_balance(
        to_float(fields["total_order_fees"]), to_float(fields["total_paid"]), to_float(fields["balance"]),
    )
    fields["created_at"] = fields.get("shopify_created_at")
    fields["updated_at"] = fields.get("shopify_updated_at")
    order = models.Order(**{k: v for k, v in fields.items() if v is not None or k == "shopify_order_id"})
    db.add(order)
    items = reconcile([], normalized.items, normalized.order_id)
    _write_items(db, order, items)
    order.line_items = [item.summary() for item in items]
    return order


def _update(db: Session, order: models.Order, normalized: NormalizedOrder) -> None:
    fields = normalized.fields
    ref = order.order_id
    cancelled = normalized.is_cancelled

    for name in SYNCED_FIELDS:
        value = fields.get(name)
        if getattr(order, name) != value:
            setattr(order, name, value)
    if order.shopify_order_id is None and normalized.shopify_order_id:
        order.shopify_order_id = normalized.shopify_order_id

    # --- total ---
    upstream_total = normalized.total
    total_overridden = not cancelled and is_manual_total(order.total_order_fees, upstream_total)
    if total_overridden:
        logger.info(
            "Order %s: preserving manual edit, total %.2f kept (Shopify says %.2f)",
            ref, to_float(order.total_order_fees), upstream_total,
        )
    else:
        order.total_order_fees = upstream_total

    # --- status ---
    if cancelled:
        if order.status != "canceled":
            logger.info("Order %s: cancelled upstream, status %s -> canceled", ref, order.status)
        order.status = "canceled"
    elif not order.status:
        order.status = fields["status"]

    # --- payment (courier edits win unless the order was cancelled) ---
    if has_courier_edits(order) and not cancelled:
        logger.info("Order %s: preserving manual edit, courier payment fields kept", ref)
    else:
        order.payment_method = fields["payment_method"]
        order.payment_status = fields["payment_status"]

    # --- archive follows Shopify closing the order; local archive is kept ---
    if fields["archived"] and not order.archived:
        order.archived = True
        order.archived_at = fields["archived_at"]

    order.balance = compute_balance(
        to_float(order.total_order_fees),
        to_float(fields["total_paid"]),
        to_float(fields["balance"]),
        manual_balance=order.manual_balance,
        total_overridden=total_overridden,
    )

    if fields.get("shopify_updated_at") is not None:
        order.updated_at = fields["shopify_updated_at"]

    existing = [LineItemRecord.from_row(row) for row in order.items]
    items = reconcile(existing, normalized.items, ref)
    _write_items(db, order, items)
    summaries = [item.summary() for item in items]
    if order.line_items != summaries:
        order.line_items = summaries


def upsert_order(db: Session, normalized: NormalizedOrder) -> str:
    """
    Insert or update one order and its items. Does not commit.

    Lookup is by Shopify order id first, then by order code. Returns
    "inserted" or "updated".
    """
    order = crud_order.find_order(db, normalized.shopify_order_id, normalized.order_id)
    if order is None:
        _insert(db, normalized)
        db.flush()
        return INSERTED
    _update(db, order, normalized)
    db.flush()
    return UPDATED
