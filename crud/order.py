# crud/order.py

from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

import models
from utils import canonical_id, get_logger, now_utc, to_float

logger = get_logger("crud.order")


class OrderNotFoundError(LookupError):
    pass


class ManualEditError(Exception):
    """A rejected or failed admin edit; carries a technical and a localized message."""

    def __init__(self, message: str, message_ar: str, status_code: int = 400):
        self.message = message
        self.message_ar = message_ar
        self.status_code = status_code
        super().__init__(message)

    def to_detail(self) -> dict:
        return {"error": self.message, "message_ar": self.message_ar}


# ---------------- lookups ----------------

def get_order(db: Session, order_pk: int) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .options(selectinload(models.Order.items))
        .filter(models.Order.id == order_pk)
        .first()
    )


def get_order_by_shopify_id(db: Session, shopify_order_id: Any) -> Optional[models.Order]:
    sid = canonical_id(shopify_order_id)
    if sid is None:
        return None
    return db.query(models.Order).filter(models.Order.shopify_order_id == sid).first()


def get_order_by_code(db: Session, order_code: Optional[str]) -> Optional[models.Order]:
    if not order_code:
        return None
    return db.query(models.Order).filter(models.Order.order_id == order_code).first()


def find_order(db: Session, shopify_order_id: Any, order_code: Optional[str]) -> Optional[models.Order]:
    """By Shopify id, falling back to the human order code."""
    return get_order_by_shopify_id(db, shopify_order_id) or get_order_by_code(db, order_code)


def list_orders(
    db: Session,
    status: Optional[str] = None,
    archived: Optional[bool] = None,
    courier_id: Optional[int] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[int, List[models.Order]]:
    query = db.query(models.Order)
    if status:
        query = query.filter(models.Order.status == status)
    if archived is not None:
        query = query.filter(models.Order.archived.is_(archived))
    if courier_id is not None:
        query = query.filter(models.Order.assigned_courier_id == courier_id)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(
            models.Order.order_id.ilike(like),
            models.Order.customer_name.ilike(like),
            models.Order.customer_phone.ilike(like),
        ))
    total = query.count()
    orders = (
        query.order_by(models.Order.shopify_created_at.desc().nullslast(), models.Order.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    return total, orders


def shopify_order_ids(db: Session) -> List[str]:
    rows = (
        db.query(models.Order.shopify_order_id)
        .filter(models.Order.shopify_order_id.isnot(None))
        .order_by(models.Order.id)
        .all()
    )
    return [r[0] for r in rows]


def orders_with_missing_images(db: Session) -> List[models.Order]:
    return (
        db.query(models.Order)
        .join(models.OrderItem)
        .filter(models.OrderItem.image_url.is_(None))
        .filter(or_(models.OrderItem.product_id.isnot(None), models.OrderItem.variant_id.isnot(None)))
        .options(selectinload(models.Order.items))
        .distinct()
        .all()
    )


def get_courier(db: Session, courier_id: int) -> Optional[models.Courier]:
    return db.query(models.Courier).filter(models.Courier.id == courier_id).first()


# ---------------- admin edits ----------------

def _require_order(db: Session, order_pk: int) -> models.Order:
    order = get_order(db, order_pk)
    if order is None:
        raise OrderNotFoundError(f"Order {order_pk} not found")
    return order


def _commit(db: Session, action: str, order: models.Order, apply: Callable[[], None]) -> models.Order:
    """Apply an edit and commit; on failure roll back and surface both messages."""
    try:
        apply()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Order %s: %s failed", order.order_id, action)
        raise ManualEditError(
            f"{action} failed for order {order.order_id}: {e}",
            "تعذر حفظ التعديل على الطلب، يرجى المحاولة مرة أخرى",
            status_code=500,
        ) from e
    db.refresh(order)
    return order


def recalculate_totals(order: models.Order) -> float:
    """Active items (price x qty less item discount) plus shipping and tax."""
    items_total = sum(
        max(0.0, to_float(item.price) * (item.quantity or 0) - to_float(item.total_discount))
        for item in order.items
        if not item.is_removed
    )
    return round(items_total + to_float(order.total_shipping_price) + to_float(order.total_tax), 2)


def _refresh_balance(order: models.Order) -> None:
    if order.manual_balance is not None:
        order.balance = round(max(0.0, to_float(order.manual_balance)), 2)
    else:
        order.balance = round(max(0.0, to_float(order.total_order_fees) - to_float(order.total_paid)), 2)


def set_total_override(db: Session, order_pk: int, total: float) -> models.Order:
    if total < 0:
        raise ManualEditError("Total must not be negative", "لا يمكن أن يكون الإجمالي سالباً")
    order = _require_order(db, order_pk)

    def apply():
        order.total_order_fees = round(total, 2)
        _refresh_balance(order)

    return _commit(db, "Set total", order, apply)


def set_manual_balance(db: Session, order_pk: int, balance: Optional[float]) -> models.Order:
    if balance is not None and balance < 0:
        raise ManualEditError("Balance must not be negative", "لا يمكن أن يكون الرصيد سالباً")
    order = _require_order(db, order_pk)

    def apply():
        order.manual_balance = None if balance is None else round(balance, 2)
        _refresh_balance(order)

    return _commit(db, "Set balance", order, apply)


def _get_item(order: models.Order, item_id: int) -> models.OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise OrderNotFoundError(f"Item {item_id} not found on order {order.order_id}")


def remove_item(db: Session, order_pk: int, item_id: int) -> models.Order:
    order = _require_order(db, order_pk)
    item = _get_item(order, item_id)
    if item.is_removed:
        return order

    def apply():
        item.is_removed = True
        item.fulfillment_status = "removed"
        item.properties = {**(item.properties or {}), "_is_removed": True}
        order.total_order_fees = recalculate_totals(order)
        _refresh_balance(order)

    return _commit(db, "Remove item", order, apply)


def restore_item(db: Session, order_pk: int, item_id: int) -> models.Order:
    order = _require_order(db, order_pk)
    item = _get_item(order, item_id)
    if not item.is_removed:
        return order
    if not item.quantity:
        raise ManualEditError(
            f"Item {item_id} has no quantity left upstream and cannot be restored",
            "لا يمكن استرجاع هذا المنتج لأنه لم يعد موجوداً في الطلب",
        )

    def apply():
        props = dict(item.properties or {})
        props.pop("_is_removed", None)
        item.properties = props
        item.is_removed = False
        item.fulfillment_status = (item.shopify_raw_data or {}).get("fulfillment_status")
        order.total_order_fees = recalculate_totals(order)
        _refresh_balance(order)

    return _commit(db, "Restore item", order, apply)


def assign_courier(db: Session, order_pk: int, courier_id: int) -> models.Order:
    order = _require_order(db, order_pk)
    if get_courier(db, courier_id) is None:
        raise ManualEditError(f"Courier {courier_id} not found", "المندوب غير موجود", status_code=404)

    def apply():
        if order.original_courier_id is None:
            order.original_courier_id = order.assigned_courier_id or courier_id
        order.assigned_courier_id = courier_id
        order.assigned_at = now_utc()
        order.status = "assigned"

    return _commit(db, "Assign courier", order, apply)


def unassign_courier(db: Session, order_pk: int) -> models.Order:
    order = _require_order(db, order_pk)

    def apply():
        order.assigned_courier_id = None
        order.assigned_at = None
        order.status = "pending"

    return _commit(db, "Unassign courier", order, apply)


def archive_order(db: Session, order_pk: int) -> models.Order:
    order = _require_order(db, order_pk)

    def apply():
        if order.original_courier_id is None and order.assigned_courier_id is not None:
            order.original_courier_id = order.assigned_courier_id
        order.assigned_courier_id = None
        order.archived = True
        order.archived_at = now_utc()

    return _commit(db, "Archive order", order, apply)


def restore_order(db: Session, order_pk: int) -> models.Order:
    order = _require_order(db, order_pk)

    def apply():
        order.archived = False
        order.archived_at = None
        if order.original_courier_id is not None:
            order.assigned_courier_id = order.original_courier_id

    return _commit(db, "Restore order", order, apply)
