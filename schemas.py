# schemas.py
from __future__ import annotations

from typing import Annotated, Optional, List, Dict, Any, Union
from datetime import datetime

from pydantic import BaseModel, Field, ConfigDict, BeforeValidator, field_validator

from utils import canonical_id

# =========================
# Base model configurations
# =========================

class ORMBase(BaseModel):
    """Base for models mapped to SQLAlchemy objects."""
    model_config = ConfigDict(from_attributes=True)

class APIBase(BaseModel):
    """Base for models mapped to external API payloads."""
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)


# ======================================================
# Boundary coercions for loosely-typed Shopify payloads
# ======================================================

ShopifyId = Annotated[Optional[str], BeforeValidator(canonical_id)]


def image_src(value: Any) -> Optional[str]:
    """Image fields arrive as a URL string or an object with src/url/original_src."""
    if value is None:
        return None
    if isinstance(value, str):
        s = value.strip()
        return None if not s or s.lower() in ("null", "undefined") else s
    if isinstance(value, dict):
        for key in ("src", "url", "original_src"):
            found = image_src(value.get(key))
            if found:
                return found
    return None


def _image_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [src for src in (image_src(v) for v in value) if src]


def _properties(value: Any) -> Dict[str, Any]:
    """Line-item properties come as a list of {name, value} pairs or a plain dict."""
    if isinstance(value, dict):
        return dict(value)
    out: Dict[str, Any] = {}
    if isinstance(value, list):
        for prop in value:
            if isinstance(prop, dict) and prop.get("name") is not None:
                out[str(prop["name"])] = prop.get("value")
    return out


ImageSrc = Annotated[Optional[str], BeforeValidator(image_src)]
ImageList = Annotated[List[str], BeforeValidator(_image_list)]
Properties = Annotated[Dict[str, Any], BeforeValidator(_properties)]
Amount = Annotated[Optional[str], BeforeValidator(lambda v: None if v is None or v == "" else str(v))]


# ======================================================
# Shopify REST order payload
# ======================================================

class ShopifyAddress(APIBase):
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None

class ShopifyCustomer(APIBase):
    id: ShopifyId = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

class ShopifyVariantRef(APIBase):
    id: ShopifyId = None
    image: ImageSrc = None
    featured_image: ImageSrc = None

class ShopifyProductRef(APIBase):
    id: ShopifyId = None
    image: ImageSrc = None
    images: ImageList = Field(default_factory=list)

class ShopifyLineItem(APIBase):
    id: ShopifyId = None
    product_id: ShopifyId = None
    variant_id: ShopifyId = None
    title: Optional[str] = None
    name: Optional[str] = None
    variant_title: Optional[str] = None
    quantity: int = 0
    price: Amount = None
    total_discount: Amount = None
    sku: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    fulfillment_status: Optional[str] = None
    properties: Properties = Field(default_factory=dict)
    image: ImageSrc = None
    images: ImageList = Field(default_factory=list)
    variant: Optional[ShopifyVariantRef] = None
    product: Optional[ShopifyProductRef] = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, v):
        try:
            return int(v or 0)
        except (TypeError, ValueError):
            return 0

    @field_validator("variant", "product", mode="before")
    @classmethod
    def _ref(cls, v):
        return v if isinstance(v, dict) else None

class ShopifyFulfillment(APIBase):
    id: ShopifyId = None
    status: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    line_items: List[ShopifyLineItem] = Field(default_factory=list)

class ShopifyRefundLineItem(APIBase):
    line_item_id: ShopifyId = None
    quantity: int = 0
    line_item: Optional[ShopifyLineItem] = None

class ShopifyRefund(APIBase):
    id: ShopifyId = None
    refund_line_items: List[ShopifyRefundLineItem] = Field(default_factory=list)

class ShopifyShippingLine(APIBase):
    title: Optional[str] = None
    price: Amount = None

class ShopifyTransaction(APIBase):
    kind: Optional[str] = None
    gateway: Optional[str] = None
    status: Optional[str] = None
    amount: Amount = None
    payment_details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("payment_details", mode="before")
    @classmethod
    def _details(cls, v):
        return v if isinstance(v, dict) else {}

class ShopifyOrder(APIBase):
    id: ShopifyId = None
    name: Optional[str] = None
    order_number: Optional[Union[int, str]] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    closed_at: Optional[str] = None
    cancel_reason: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    gateway: Optional[str] = None
    payment_gateway_names: List[str] = Field(default_factory=list)
    currency: Optional[str] = None
    total_price: Amount = None
    subtotal_price: Amount = None
    total_tax: Amount = None
    total_discounts: Amount = None
    current_total_price: Amount = None
    current_subtotal_price: Amount = None
    current_total_tax: Amount = None
    current_total_discounts: Amount = None
    total_outstanding: Amount = None
    total_shipping_price_set: Dict[str, Any] = Field(default_factory=dict)
    tags: Optional[str] = None
    note: Optional[str] = None
    customer_note: Optional[str] = None
    customer: Optional[ShopifyCustomer] = None
    shipping_address: Optional[ShopifyAddress] = None
    billing_address: Optional[ShopifyAddress] = None
    line_items: List[ShopifyLineItem] = Field(default_factory=list)
    fulfillments: List[ShopifyFulfillment] = Field(default_factory=list)
    refunds: List[ShopifyRefund] = Field(default_factory=list)
    shipping_lines: List[ShopifyShippingLine] = Field(default_factory=list)
    payment_transactions: List[ShopifyTransaction] = Field(default_factory=list)
    transactions: List[ShopifyTransaction] = Field(default_factory=list)

    @field_validator("payment_gateway_names", mode="before")
    @classmethod
    def _gateways(cls, v):
        if isinstance(v, str):
            return [v]
        return [str(x) for x in v if x] if isinstance(v, list) else []

    @field_validator(
        "line_items", "fulfillments", "refunds", "shipping_lines",
        "payment_transactions", "transactions", mode="before",
    )
    @classmethod
    def _lists(cls, v):
        return [x for x in v if isinstance(x, dict)] if isinstance(v, list) else []

    @field_validator("total_shipping_price_set", mode="before")
    @classmethod
    def _money_set(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("customer", "shipping_address", "billing_address", mode="before")
    @classmethod
    def _objects(cls, v):
        return v if isinstance(v, dict) else None

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        if isinstance(v, list):
            return ",".join(str(t) for t in v)
        return v


# ======================================================
# App-specific schemas (for API responses and payloads)
# ======================================================

class SyncError(BaseModel):
    order_id: Optional[str] = None
    error: str

class SyncSummary(BaseModel):
    success: bool
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    errors: List[SyncError] = Field(default_factory=list)

class OrderItemOut(ORMBase):
    id: int
    shopify_line_item_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    title: Optional[str] = None
    variant_title: Optional[str] = None
    quantity: int
    price: Optional[float] = None
    total_discount: Optional[float] = None
    sku: Optional[str] = None
    fulfillment_status: Optional[str] = None
    image_url: Optional[str] = None
    is_removed: bool

class OrderOut(ORMBase):
    id: int
    order_id: str
    shopify_order_id: Optional[str] = None
    shopify_order_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Optional[str] = None
    shipping_city: Optional[str] = None
    status: str
    archived: bool
    payment_method: Optional[str] = None
    payment_status: Optional[str] = None
    financial_status: Optional[str] = None
    currency: Optional[str] = None
    total_order_fees: Optional[float] = None
    total_paid: Optional[float] = None
    balance: Optional[float] = None
    manual_balance: Optional[float] = None
    assigned_courier_id: Optional[int] = None
    original_courier_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    order_tags: Optional[List[str]] = None
    notes: Optional[str] = None
    internal_comment: Optional[str] = None
    shopify_created_at: Optional[datetime] = None
    shopify_updated_at: Optional[datetime] = None

class OrderDetailOut(OrderOut):
    items: List[OrderItemOut] = Field(default_factory=list)

class OrderList(BaseModel):
    total: int
    orders: List[OrderOut]

class CourierAssignment(BaseModel):
    courier_id: Optional[int] = None

class TotalOverride(BaseModel):
    total_order_fees: float = Field(..., ge=0)

class BalanceOverride(BaseModel):
    manual_balance: Optional[float] = Field(None, ge=0)
