# services/line_item_reconciler.py
"""
Merge the items Shopify currently reports for an order with the items already
stored for it.

Rules, in order of precedence:

* An item already stored as removed stays removed, even if Shopify still
  lists it with a positive quantity. Removal is an admin decision.
* A stored item Shopify no longer lists is kept, flagged removed with
  quantity 0. Nothing is deleted by a sync.
* Every upstream item is carried. It is flagged removed when its quantity is
  0, its fulfillment status is "removed", its properties carry the removed
  marker, or it was fully refunded.
* Items are matched on the canonical Shopify line-item id, so 123 and "123"
  are the same line.

The result lists upstream items in upstream order, followed by retained
stored items in their stored order. Stored rows keep their internal id so the
caller can update them in place.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional, Set

from services.order_normalizer import (
    REMOVED_MARKER,
    REMOVED_STATUS,
    LineItemRecord,
    has_removed_marker,
)
from utils import get_logger

logger = get_logger("reconciler")


def is_upstream_removed(item: LineItemRecord) -> bool:
    return (
        item.is_removed
        or item.quantity == 0
        or item.fulfillment_status == REMOVED_STATUS
        or has_removed_marker(item.properties)
    )


def mark_removed(item: LineItemRecord, zero_quantity: bool = False) -> LineItemRecord:
    return replace(
        item,
        is_removed=True,
        quantity=0 if zero_quantity else item.quantity,
        fulfillment_status=REMOVED_STATUS,
        properties={**(item.properties or {}), REMOVED_MARKER: True},
    )


def reconcile(
    existing: Iterable[LineItemRecord],
    upstream: Iterable[LineItemRecord],
    order_ref: Optional[str] = None,
) -> List[LineItemRecord]:
    stored = list(existing)
    stored_by_key = {item.key: item for item in stored if item.key is not None}

    result: List[LineItemRecord] = []
    seen: Set[str] = set()

    for item in upstream:
        key = item.key
        if key is not None and key in seen:
            continue
        previous = stored_by_key.get(key) if key is not None else None
        merged = replace(item, id=previous.id if previous else None)

        if is_upstream_removed(item):
            merged = replace(merged, is_removed=True)
        elif previous is not None and previous.is_removed:
            logger.info(
                "Order %s: preserving manual edit, line item %s stays removed",
                order_ref or "?", key,
            )
            merged = mark_removed(merged)

        result.append(merged)
        if key is not None:
            seen.add(key)

    for item in stored:
        key = item.key
        if key is None:
            # Local-only line, not ours to touch.
            result.append(item)
            continue
        if key in seen:
            continue
        if not item.is_removed or item.quantity:
            logger.info("Order %s: line item %s no longer upstream, keeping it as removed", order_ref or "?", key)
        result.append(mark_removed(item, zero_quantity=True))
        seen.add(key)

    return result
