# models.py

from sqlalchemy import (Column, Integer, String, DateTime, Text, JSON,
                        ForeignKey, NUMERIC, BOOLEAN, Index, UniqueConstraint)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
from database import Base

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def Money():
    return NUMERIC(12, 2, asdecimal=False)


ORDER_STATUSES = (
    "pending", "assigned", "delivered", "partial", "canceled",
    "return", "hand_to_hand", "receiving_part",
)

# Statuses a courier/admin has moved the order into; a sync never rewinds them.
PROCESSED_STATUSES = ("assigned", "delivered", "partial", "return", "hand_to_hand", "receiving_part")


class Courier(Base):
    __tablename__ = "couriers"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(64))
    active = Column(BOOLEAN, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)
    shopify_order_id = Column(String(64), unique=True, nullable=True, index=True)
    shopify_order_number = Column(String(64))
    shopify_order_name = Column(String(64))

    # --- customer ---
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    customer_id = Column(String(64))
    customer_phone = Column(String(64))
    mobile_number = Column(String(64))

    # --- addresses ---
    address = Column(Text)
    shipping_address = Column(JSONType)
    billing_address = Column(JSONType)
    shipping_city = Column(String(255))
    billing_city = Column(String(255))
    shipping_country = Column(String(255))
    billing_country = Column(String(255))
    shipping_zip = Column(String(32))
    billing_zip = Column(String(32))

    # --- financial ---
    subtotal_price = Column(Money(), default=0)
    total_tax = Column(Money(), default=0)
    total_discounts = Column(Money(), default=0)
    total_shipping_price = Column(Money(), default=0)
    currency = Column(String(10), default="EGP")
    total_price = Column(Money(), default=0)
    total_order_fees = Column(Money(), default=0)
    total_paid = Column(Money(), default=0)
    balance = Column(Money(), default=0)
    manual_balance = Column(Money(), nullable=True)

    # --- status ---
    status = Column(String(32), nullable=False, default="pending", index=True)
    archived = Column(BOOLEAN, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True))
    shopify_cancelled_at = Column(DateTime(timezone=True))
    shopify_closed_at = Column(DateTime(timezone=True))
    cancel_reason = Column(String(64))

    # --- payment ---
    payment_method = Column(String(64))
    payment_status = Column(String(64))
    financial_status = Column(String(64))
    payment_gateway_names = Column(JSONType)
    payment_transactions = Column(JSONType)

    # --- fulfillment ---
    fulfillment_status = Column(String(64))
    shipping_method = Column(String(255))
    tracking_number = Column(String(255))
    tracking_url = Column(String(2048))

    # --- content ---
    line_items = Column(JSONType)
    product_images = Column(JSONType)
    order_tags = Column(JSONType)
    order_note = Column(Text)
    customer_note = Column(Text)
    notes = Column(Text)
    internal_comment = Column(Text)

    # --- courier edits ---
    delivery_fee = Column(Money(), nullable=True)
    partial_paid_amount = Column(Money(), nullable=True)
    collected_by = Column(String(64))
    payment_sub_type = Column(String(64))

    # --- assignment ---
    assigned_courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=True, index=True)
    original_courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=True)
    assigned_at = Column(DateTime(timezone=True))

    # --- audit ---
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    shopify_created_at = Column(DateTime(timezone=True))
    shopify_updated_at = Column(DateTime(timezone=True))
    shopify_raw_data = Column(JSONType)

    items = relationship(
        "OrderItem", back_populates="order", cascade="all",
        order_by="OrderItem.position",
    )
    assigned_courier = relationship("Courier", foreign_keys=[assigned_courier_id])
    original_courier = relationship("Courier", foreign_keys=[original_courier_id])

    __table_args__ = (
        Index("ix_orders_archived_status", "archived", "status"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    shopify_line_item_id = Column(String(64), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(64))
    variant_id = Column(String(64))
    title = Column(String(512))
    variant_title = Column(String(512))
    quantity = Column(Integer, nullable=False, default=0)
    price = Column(Money(), default=0)
    total_discount = Column(Money(), default=0)
    sku = Column(String(255))
    vendor = Column(String(255))
    product_type = Column(String(255))
    fulfillment_status = Column(String(64))
    image_url = Column(String(2048))
    properties = Column(JSONType)
    shopify_raw_data = Column(JSONType)
    is_removed = Column(BOOLEAN, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        UniqueConstraint("order_id", "shopify_line_item_id", name="uq_order_items_order_line_item"),
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"
    id = Column(Integer, primary_key=True)
    source = Column(String(32), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    finished_at = Column(DateTime(timezone=True))
    status = Column(Text)
    updated_at_min = Column(DateTime(timezone=True))
    pages_ok = Column(Integer, default=0)
    pages_failed = Column(Integer, default=0)
    imported = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    total = Column(Integer, default=0)
    errors = Column(JSONType, default=list)
