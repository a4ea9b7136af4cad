# routes/orders.py

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from crud import order as crud_order
from crud.order import ManualEditError, OrderNotFoundError
import schemas

router = APIRouter(prefix="/api/orders", tags=["Orders"])


def _edit(fn, *args) -> schemas.OrderDetailOut:
    try:
        order = fn(*args)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail={"error": str(e)})
    except ManualEditError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return schemas.OrderDetailOut.model_validate(order)


@router.get("", response_model=schemas.OrderList)
def list_orders(
    status: Optional[str] = None,
    archived: Optional[bool] = None,
    courier_id: Optional[int] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    total, orders = crud_order.list_orders(db, status, archived, courier_id, search, skip, limit)
    return {"total": total, "orders": orders}


@router.get("/{order_pk}", response_model=schemas.OrderDetailOut)
def get_order(order_pk: int, db: Session = Depends(get_db)):
    order = crud_order.get_order(db, order_pk)
    if not order:
        raise HTTPException(status_code=404, detail={"error": f"Order {order_pk} not found"})
    return order


@router.put("/{order_pk}/total", response_model=schemas.OrderDetailOut)
def set_total(order_pk: int, payload: schemas.TotalOverride, db: Session = Depends(get_db)):
    return _edit(crud_order.set_total_override, db, order_pk, payload.total_order_fees)


@router.put("/{order_pk}/balance", response_model=schemas.OrderDetailOut)
def set_balance(order_pk: int, payload: schemas.BalanceOverride, db: Session = Depends(get_db)):
    return _edit(crud_order.set_manual_balance, db, order_pk, payload.manual_balance)


@router.post("/{order_pk}/items/{item_id}/remove", response_model=schemas.OrderDetailOut)
def remove_item(order_pk: int, item_id: int, db: Session = Depends(get_db)):
    return _edit(crud_order.remove_item, db, order_pk, item_id)


@router.post("/{order_pk}/items/{item_id}/restore", response_model=schemas.OrderDetailOut)
def restore_item(order_pk: int, item_id: int, db: Session = Depends(get_db)):
    return _edit(crud_order.restore_item, db, order_pk, item_id)


@router.put("/{order_pk}/courier", response_model=schemas.OrderDetailOut)
def assign_courier(order_pk: int, payload: schemas.CourierAssignment, db: Session = Depends(get_db)):
    if payload.courier_id is None:
        return _edit(crud_order.unassign_courier, db, order_pk)
    return _edit(crud_order.assign_courier, db, order_pk, payload.courier_id)


@router.post("/{order_pk}/archive", response_model=schemas.OrderDetailOut)
def archive_order(order_pk: int, db: Session = Depends(get_db)):
    return _edit(crud_order.archive_order, db, order_pk)


@router.post("/{order_pk}/restore", response_model=schemas.OrderDetailOut)
def restore_order(order_pk: int, db: Session = Depends(get_db)):
    return _edit(crud_order.restore_order, db, order_pk)
