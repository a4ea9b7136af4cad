# services/order_normalizer.py
"""
Shopify REST order -> internal order record.

Pure functions: nothing here reads or writes the database. The raw payload is
decoded once through schemas.ShopifyOrder so that everything below works on
typed fields (ids canonicalized, image unions flattened to URLs, properties
flattened to a dict).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import schemas
from utils import canonical_id, clean_image_url, parse_dt, to_float

REMOVED_MARKER = "_is_removed"
REMOVED_STATUS = "removed"

ONLINE_GATEWAY_KEYWORDS = (
    "paymob", "pay mob", "card", "visa", "mastercard", "master card", "credit", "debit",
    "sohoola", "sympl", "tru", "stripe", "paypal", "square", "razorpay", "fawry", "instapay",
    "vodafone cash", "vodafonecash", "orange cash", "orangecash", "we pay", "wepay",
)


@dataclass
class LineItemRecord:
    """One order line as persisted in order_items (minus the owning order id)."""
    shopify_line_item_id: Optional[str]
    title: Optional[str] = None
    variant_title: Optional[str] = None
    quantity: int = 0
    price: float = 0.0
    total_discount: float = 0.0
    sku: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    fulfillment_status: Optional[str] = None
    image_url: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    shopify_raw_data: Dict[str, Any] = field(default_factory=dict)
    is_removed: bool = False
    id: Optional[int] = None

    @property
    def key(self) -> Optional[str]:
        return canonical_id(self.shopify_line_item_id)

    def row_values(self) -> Dict[str, Any]:
        values = asdict(self)
        values.pop("id")
        values["shopify_line_item_id"] = self.key
        return values

    def summary(self) -> Dict[str, Any]:
        """Denormalized form kept on orders.line_items."""
        return {
            "id": self.key,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "title": self.title,
            "variant_title": self.variant_title,
            "quantity": self.quantity,
            "price": self.price,
            "total_discount": self.total_discount,
            "sku": self.sku,
            "fulfillment_status": self.fulfillment_status,
            "image_url": self.image_url,
            "is_removed": self.is_removed,
        }

    @classmethod
    def from_row(cls, row: Any) -> "LineItemRecord":
        return cls(
            id=row.id,
            shopify_line_item_id=canonical_id(row.shopify_line_item_id),
            title=row.title,
            variant_title=row.variant_title,
            quantity=row.quantity or 0,
            price=to_float(row.price),
            total_discount=to_float(row.total_discount),
            sku=row.sku,
            vendor=row.vendor,
            product_type=row.product_type,
            product_id=row.product_id,
            variant_id=row.variant_id,
            fulfillment_status=row.fulfillment_status,
            image_url=row.image_url,
            properties=dict(row.properties or {}),
            shopify_raw_data=dict(row.shopify_raw_data or {}),
            is_removed=bool(row.is_removed),
        )


@dataclass
class PaymentInfo:
    method: str
    status: str
    methods: List[str] = field(default_factory=list)
    has_gift_card: bool = False
    is_partially_paid: bool = False


@dataclass
class NormalizedOrder:
    shopify_order_id: Optional[str]
    order_id: str
    fields: Dict[str, Any]
    items: List[LineItemRecord]
    is_cancelled: bool = False

    @property
    def total(self) -> float:
        return to_float(self.fields.get("total_order_fees"))


# ---------------------------------------------------------------------------
# Small derivations
# ---------------------------------------------------------------------------

def is_truthy_marker(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def has_removed_marker(properties: Optional[Mapping[str, Any]]) -> bool:
    return bool(properties) and is_truthy_marker(properties.get(REMOVED_MARKER))


def customer_name(order: schemas.ShopifyOrder) -> str:
    shipping = order.shipping_address
    billing = order.billing_address
    if shipping and shipping.name and shipping.name.strip():
        return shipping.name.strip()
    if billing and billing.name and billing.name.strip():
        return billing.name.strip()
    customer = order.customer
    if customer:
        full = f"{customer.first_name or ''} {customer.last_name or ''}".strip()
        if full:
            return full
    return "Unknown"


def parse_tags(tags: Optional[str]) -> List[str]:
    if not tags or not tags.strip():
        return []
    return [t.strip() for t in tags.split(",") if t.strip()]


def classify_payment(
    gateway: Optional[str],
    financial_status: Optional[str],
    transactions: Optional[List[schemas.ShopifyTransaction]] = None,
) -> PaymentInfo:
    """
    Fixed precedence: gift card (from transactions) and valu/online gateways
    decide the method; valu and online gateways are always paid; otherwise
    the financial status decides between paid, partially_paid, pending and cod.
    """
    gw = (gateway or "").lower()
    status = (financial_status or "").lower()
    transactions = transactions or []

    has_gift_card = any(
        "gift" in (t.gateway or "").lower()
        or t.kind == "gift_card"
        or t.payment_details.get("credit_card_company") == "gift_card"
        for t in transactions
    )
    is_partially_paid = "partially" in status

    methods: List[str] = []
    if has_gift_card:
        methods.append("gift_card")
    if "valu" in gw:
        methods.append("valu")
    is_online = any(keyword in gw for keyword in ONLINE_GATEWAY_KEYWORDS)
    if is_online and "paymob" not in methods:
        methods.append("paymob")

    fully_paid = "paid" in status and not is_partially_paid
    if "valu" in gw or is_online:
        payment_status = "paid"
    elif fully_paid:
        payment_status = "paid"
    elif is_partially_paid:
        payment_status = "partially_paid"
    elif "pending" in status or "authorized" in status:
        payment_status = "pending"
    else:
        payment_status = "cod"

    if methods:
        method = methods[0]
    elif fully_paid:
        method = "paid"
    else:
        method = "cash"

    return PaymentInfo(method, payment_status, methods, has_gift_card, is_partially_paid)


def item_image(
    item: schemas.ShopifyLineItem,
    image_map: Optional[Mapping[Any, str]] = None,
    cdn_host: Optional[str] = None,
) -> Optional[str]:
    """Inline images first, then the resolver's map by variant, then by product."""
    variant = item.variant
    product = item.product
    candidates = [
        item.image,
        variant.image if variant else None,
        variant.featured_image if variant else None,
        item.images[0] if item.images else None,
        product.images[0] if product and product.images else None,
        product.image if product else None,
    ]
    if image_map is not None:
        candidates.append(image_map.get(item.variant_id) if item.variant_id else None)
        candidates.append(image_map.get(item.product_id) if item.product_id else None)
    for candidate in candidates:
        url = clean_image_url(candidate, cdn_host)
        if url:
            return url
    return None


def _record(item: schemas.ShopifyLineItem, image_map, cdn_host) -> LineItemRecord:
    properties = dict(item.properties)
    return LineItemRecord(
        shopify_line_item_id=item.id,
        title=item.title or item.name,
        variant_title=item.variant_title,
        quantity=item.quantity,
        price=to_float(item.price),
        total_discount=to_float(item.total_discount),
        sku=item.sku,
        vendor=item.vendor,
        product_type=item.product_type,
        product_id=item.product_id,
        variant_id=item.variant_id,
        fulfillment_status=item.fulfillment_status,
        image_url=item_image(item, image_map, cdn_host),
        properties=properties,
        shopify_raw_data=item.model_dump(mode="json", exclude_none=True),
        is_removed=(
            item.quantity == 0
            or item.fulfillment_status == REMOVED_STATUS
            or has_removed_marker(properties)
        ),
    )


def collect_line_items(
    order: schemas.ShopifyOrder,
    image_map: Optional[Mapping[Any, str]] = None,
    cdn_host: Optional[str] = None,
) -> List[LineItemRecord]:
    """
    Every item the upstream payload knows about: current line items, items
    only visible through fulfillments, and items only visible through refunds.
    """
    by_key: Dict[str, LineItemRecord] = {}
    ordered: List[LineItemRecord] = []

    def add(record: LineItemRecord) -> None:
        if record.key is None:
            ordered.append(record)
        elif record.key not in by_key:
            by_key[record.key] = record
            ordered.append(record)

    for item in order.line_items:
        add(_record(item, image_map, cdn_host))

    for fulfillment in order.fulfillments:
        for item in fulfillment.line_items:
            if item.id in by_key:
                existing = by_key[item.id]
                if not existing.is_removed:
                    existing.fulfillment_status = "fulfilled"
                continue
            record = _record(item, image_map, cdn_host)
            record.fulfillment_status = "fulfilled"
            record.is_removed = False
            add(record)

    for refund in order.refunds:
        for refund_line in refund.refund_line_items:
            item = refund_line.line_item
            key = (item.id if item else None) or refund_line.line_item_id
            if key is None:
                continue
            existing = by_key.get(key)
            if existing is not None:
                if refund_line.quantity >= existing.quantity:
                    existing.is_removed = True
                    existing.fulfillment_status = REMOVED_STATUS
                continue
            if item is None:
                continue
            record = _record(item, image_map, cdn_host)
            record.quantity = 0
            record.is_removed = True
            record.fulfillment_status = REMOVED_STATUS
            record.properties = {**record.properties, REMOVED_MARKER: True}
            add(record)

    return ordered


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def decode(raw: Union[Dict[str, Any], schemas.ShopifyOrder]) -> schemas.ShopifyOrder:
    if isinstance(raw, schemas.ShopifyOrder):
        return raw
    return schemas.ShopifyOrder.model_validate(raw)


def normalize(
    raw: Union[Dict[str, Any], schemas.ShopifyOrder],
    image_map: Optional[Mapping[Any, str]] = None,
    cdn_host: Optional[str] = None,
) -> NormalizedOrder:
    order = decode(raw)
    if order.id is None and not order.name and order.order_number is None:
        raise ValueError("Order payload has no id, name or order number")

    shipping = order.shipping_address or schemas.ShopifyAddress()
    billing = order.billing_address or schemas.ShopifyAddress()
    customer = order.customer or schemas.ShopifyCustomer()
    transactions = order.payment_transactions or order.transactions

    gateway = ", ".join(order.payment_gateway_names) or order.gateway
    payment = classify_payment(gateway, order.financial_status, transactions)

    total = to_float(order.current_total_price or order.total_price)
    outstanding = to_float(order.total_outstanding)
    shop_money = order.total_shipping_price_set.get("shop_money") or {}
    shipping_price = to_float(shop_money.get("amount") or order.total_shipping_price_set.get("amount"))
    phone = shipping.phone or billing.phone or customer.phone or "N/A"

    items = collect_line_items(order, image_map, cdn_host)

    product_images: Dict[str, str] = {}
    for item in items:
        if item.image_url:
            if item.product_id:
                product_images.setdefault(item.product_id, item.image_url)
            if item.variant_id:
                product_images.setdefault(item.variant_id, item.image_url)

    fulfillment = order.fulfillments[0] if order.fulfillments else None
    cancelled_at = parse_dt(order.cancelled_at)
    is_cancelled = cancelled_at is not None or (order.financial_status or "").lower() == "voided"
    closed_at = parse_dt(order.closed_at)
    order_code = order.name or (str(order.order_number) if order.order_number is not None else None) or order.id

    fields: Dict[str, Any] = {
        "order_id": order_code,
        "shopify_order_id": order.id,
        "shopify_order_number": str(order.order_number) if order.order_number is not None else None,
        "shopify_order_name": order.name,

        "customer_name": customer_name(order),
        "customer_email": customer.email or order.email,
        "customer_id": customer.id,
        "customer_phone": phone,
        "mobile_number": phone,

        "address": shipping.address1 or shipping.address2 or billing.address1 or "N/A",
        "shipping_address": order.shipping_address.model_dump(mode="json", exclude_none=True) if order.shipping_address else None,
        "billing_address": order.billing_address.model_dump(mode="json", exclude_none=True) if order.billing_address else None,
        "shipping_city": shipping.city,
        "billing_city": billing.city,
        "shipping_country": shipping.country,
        "billing_country": billing.country,
        "shipping_zip": shipping.zip,
        "billing_zip": billing.zip,

        "subtotal_price": to_float(order.current_subtotal_price or order.subtotal_price),
        "total_tax": to_float(order.current_total_tax or order.total_tax),
        "total_discounts": to_float(order.current_total_discounts or order.total_discounts),
        "total_shipping_price": shipping_price,
        "currency": order.currency or "EGP",
        "total_price": total,
        "total_order_fees": total,
        "total_paid": round(total - outstanding, 2),
        "balance": max(0.0, outstanding),

        "status": "canceled" if is_cancelled else "pending",
        "archived": closed_at is not None,
        "archived_at": closed_at,
        "shopify_cancelled_at": cancelled_at,
        "shopify_closed_at": closed_at,
        "cancel_reason": order.cancel_reason,

        "payment_method": payment.method,
        "payment_status": payment.status,
        "financial_status": order.financial_status or payment.status,
        "payment_gateway_names": list(order.payment_gateway_names),
        "payment_transactions": [t.model_dump(mode="json", exclude_none=True) for t in transactions] or None,

        "fulfillment_status": order.fulfillment_status,
        "shipping_method": order.shipping_lines[0].title if order.shipping_lines else None,
        "tracking_number": fulfillment.tracking_number if fulfillment else None,
        "tracking_url": fulfillment.tracking_url if fulfillment else None,

        "line_items": [item.summary() for item in items],
        "product_images": product_images,
        "order_tags": parse_tags(order.tags),
        "order_note": order.note,
        "customer_note": order.customer_note,
        "notes": order.note or order.customer_note or "",

        "shopify_created_at": parse_dt(order.created_at),
        "shopify_updated_at": parse_dt(order.updated_at) or parse_dt(order.created_at),
        "shopify_raw_data": order.model_dump(mode="json", exclude_none=True),
    }

    return NormalizedOrder(
        shopify_order_id=order.id,
        order_id=order_code,
        fields=fields,
        items=items,
        is_cancelled=is_cancelled,
    )
