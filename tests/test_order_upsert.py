"""
Tests for persisting normalized orders: idempotence and preservation of admin edits.
"""
import pytest

import models
from crud import order as crud_order
from services.image_resolver import ImageMap
from services.order_normalizer import normalize
from services.order_upsert import INSERTED, UPDATED, compute_balance, is_manual_total, upsert_order

from factories import make_line_item, make_order


def sync(db, raw, images=None):
    outcome = upsert_order(db, normalize(raw, images or ImageMap()))
    db.commit()
    return outcome


def stored(db, shopify_id="9001") -> models.Order:
    db.expire_all()
    return crud_order.get_order_by_shopify_id(db, shopify_id)


def snapshot(order: models.Order):
    columns = {c.name: getattr(order, c.name) for c in models.Order.__table__.columns}
    items = [
        {c.name: getattr(item, c.name) for c in models.OrderItem.__table__.columns}
        for item in order.items
    ]
    return columns, items


def items_by_line(order: models.Order):
    return {item.shopify_line_item_id: item for item in order.items}


# ============================================================================
# Insert and idempotence
# ============================================================================

class TestInsert:
    def test_new_order_is_inserted(self, db_session):
        images = ImageMap({111: "https://cdn.shopify.com/shirt.jpg"})

        assert sync(db_session, make_order(), images) == INSERTED

        order = stored(db_session)
        assert order.order_id == "#1001"
        assert order.status == "pending"
        assert order.total_order_fees == 120.0
        assert order.balance == 120.0
        assert order.payment_method == "cash"
        assert [i.shopify_line_item_id for i in order.items] == ["501", "502"]
        assert [i.position for i in order.items] == [0, 1]
        assert order.items[0].image_url == "https://cdn.shopify.com/shirt.jpg"
        assert len(order.line_items) == 2

    def test_second_sync_changes_nothing(self, db_session):
        sync(db_session, make_order())
        before = snapshot(stored(db_session))

        assert sync(db_session, make_order()) == UPDATED

        assert snapshot(stored(db_session)) == before
        assert db_session.query(models.Order).count() == 1
        assert db_session.query(models.OrderItem).count() == 2

    def test_existing_order_found_by_code(self, db_session):
        db_session.add(models.Order(order_id="#1001", status="pending"))
        db_session.commit()

        assert sync(db_session, make_order()) == UPDATED

        assert db_session.query(models.Order).count() == 1
        order = stored(db_session)
        assert order.order_id == "#1001"
        assert len(order.items) == 2


# ============================================================================
# Line items
# ============================================================================

class TestItemPreservation:
    def test_manual_removal_survives_resync(self, db_session):
        sync(db_session, make_order())
        order = stored(db_session)
        pants = items_by_line(order)["502"]
        crud_order.remove_item(db_session, order.id, pants.id)

        sync(db_session, make_order())

        order = stored(db_session)
        pants = items_by_line(order)["502"]
        assert pants.is_removed is True
        assert pants.quantity == 1
        assert pants.fulfillment_status == "removed"
        assert order.total_order_fees == 70.0
        assert order.balance == 70.0

    def test_item_dropped_upstream_is_kept_removed(self, db_session):
        sync(db_session, make_order())

        sync(db_session, make_order(line_items=[make_line_item(501)]))

        order = stored(db_session)
        assert len(order.items) == 2
        pants = items_by_line(order)["502"]
        assert pants.is_removed is True
        assert pants.quantity == 0
        assert items_by_line(order)["501"].is_removed is False

    def test_removed_item_dropped_upstream_cannot_be_restored(self, db_session):
        sync(db_session, make_order())
        order = stored(db_session)
        crud_order.remove_item(db_session, order.id, items_by_line(order)["502"].id)

        sync(db_session, make_order(line_items=[make_line_item(501)]))

        order = stored(db_session)
        pants = items_by_line(order)["502"]
        assert pants.is_removed is True
        assert pants.quantity == 0
        with pytest.raises(crud_order.ManualEditError):
            crud_order.restore_item(db_session, order.id, pants.id)
        assert items_by_line(stored(db_session))["502"].is_removed is True

    def test_new_upstream_item_is_appended(self, db_session):
        sync(db_session, make_order())
        first_ids = {i.shopify_line_item_id: i.id for i in stored(db_session).items}

        sync(db_session, make_order(line_items=[
            make_line_item(501), make_line_item(502, 112, 212), make_line_item(503, 113, 213),
        ]))

        order = stored(db_session)
        assert [i.shopify_line_item_id for i in order.items] == ["501", "502", "503"]
        assert {k: v for k, v in ((i.shopify_line_item_id, i.id) for i in order.items) if k in first_ids} == first_ids


# ============================================================================
# Totals and balance
# ============================================================================

class TestTotals:
    def test_manual_total_is_preserved(self, db_session):
        sync(db_session, make_order())
        crud_order.set_total_override(db_session, stored(db_session).id, 150.0)

        sync(db_session, make_order(total_outstanding="20.00"))

        order = stored(db_session)
        assert order.total_order_fees == 150.0
        assert order.total_paid == 100.0
        assert order.balance == 50.0

    def test_small_difference_takes_upstream_total(self):
        assert is_manual_total(120.0, 120.01) is False
        assert is_manual_total(120.0, 120.02) is True
        assert is_manual_total(0, 99.0) is False
        assert is_manual_total(None, 99.0) is False

    def test_upstream_total_applied_without_override(self, db_session):
        sync(db_session, make_order())

        sync(db_session, make_order(current_total_price="135.00", total_outstanding="135.00"))

        assert stored(db_session).total_order_fees == 135.0

    def test_manual_balance_wins(self, db_session):
        sync(db_session, make_order())
        crud_order.set_manual_balance(db_session, stored(db_session).id, 30.0)

        sync(db_session, make_order(total_outstanding="120.00"))

        order = stored(db_session)
        assert order.balance == 30.0
        assert order.manual_balance == 30.0

    def test_balance_never_negative(self, db_session):
        sync(db_session, make_order(total_outstanding="-10.00"))

        assert stored(db_session).balance == 0.0

    @pytest.mark.parametrize("args,expected", [
        ((100.0, 150.0, -50.0), 0.0),
        ((100.0, 40.0, 60.0), 60.0),
        ((150.0, 100.0, 20.0, None, True), 50.0),
        ((150.0, 100.0, 20.0, 12.5, True), 12.5),
        ((150.0, 100.0, 20.0, -3.0), 0.0),
    ])
    def test_compute_balance(self, args, expected):
        assert compute_balance(*args) == expected


# ============================================================================
# Status, payment, courier and archive
# ============================================================================

class TestStatusAndAssignment:
    def test_processed_status_is_not_rewound(self, db_session, courier_factory):
        sync(db_session, make_order())
        courier = courier_factory()
        crud_order.assign_courier(db_session, stored(db_session).id, courier.id)

        sync(db_session, make_order())

        order = stored(db_session)
        assert order.status == "assigned"
        assert order.assigned_courier_id == courier.id

    def test_upstream_cancellation_wins(self, db_session, courier_factory):
        sync(db_session, make_order())
        order = stored(db_session)
        crud_order.assign_courier(db_session, order.id, courier_factory().id)
        crud_order.set_total_override(db_session, order.id, 150.0)

        sync(db_session, make_order(cancelled_at="2024-05-02T09:00:00Z"))

        order = stored(db_session)
        assert order.status == "canceled"
        assert order.total_order_fees == 120.0
        assert order.shopify_cancelled_at is not None

    def test_voided_order_is_inserted_cancelled(self, db_session):
        raw = make_order(financial_status="voided")
        sync(db_session, raw)
        before = snapshot(stored(db_session))

        sync(db_session, raw)

        order = stored(db_session)
        assert order.status == "canceled"
        assert snapshot(order) == before

    def test_original_courier_never_changes(self, db_session, courier_factory):
        sync(db_session, make_order())
        pk = stored(db_session).id
        first, second = courier_factory("Ahmed"), courier_factory("Omar")

        crud_order.assign_courier(db_session, pk, first.id)
        crud_order.assign_courier(db_session, pk, second.id)
        sync(db_session, make_order())

        order = stored(db_session)
        assert order.assigned_courier_id == second.id
        assert order.original_courier_id == first.id

    def test_courier_payment_edits_are_kept(self, db_session):
        sync(db_session, make_order())
        order = stored(db_session)
        order.collected_by = "courier"
        order.payment_status = "collected"
        db_session.commit()

        sync(db_session, make_order(payment_gateway_names=["Paymob"]))

        order = stored(db_session)
        assert order.payment_method == "cash"
        assert order.payment_status == "collected"
        assert order.collected_by == "courier"

    def test_payment_follows_upstream_without_edits(self, db_session):
        sync(db_session, make_order())

        sync(db_session, make_order(payment_gateway_names=["Paymob"]))

        order = stored(db_session)
        assert (order.payment_method, order.payment_status) == ("paymob", "paid")

    def test_closed_upstream_archives(self, db_session):
        sync(db_session, make_order())

        sync(db_session, make_order(closed_at="2024-05-03T09:00:00Z"))

        assert stored(db_session).archived is True

    def test_local_archive_is_kept(self, db_session):
        sync(db_session, make_order())
        crud_order.archive_order(db_session, stored(db_session).id)

        sync(db_session, make_order())

        assert stored(db_session).archived is True

    def test_internal_comment_untouched(self, db_session):
        sync(db_session, make_order())
        order = stored(db_session)
        order.internal_comment = "Customer prefers evening delivery"
        db_session.commit()

        sync(db_session, make_order(note="Changed upstream"))

        order = stored(db_session)
        assert order.internal_comment == "Customer prefers evening delivery"
        assert order.notes == "Changed upstream"
