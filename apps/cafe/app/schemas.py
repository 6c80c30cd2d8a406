from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field

from .inventory import availability


class OrderItemIn(BaseModel):
    product_id: int = Field(validation_alias=AliasChoices("product_id", "productId"))
    qty: int = Field(validation_alias=AliasChoices("qty", "quantity"))
    notes: Optional[str] = None


class OrderCreate(BaseModel):
    order_type: str = Field(default="takeaway", validation_alias=AliasChoices("order_type", "orderType"))
    table_number: Optional[int] = Field(default=None, validation_alias=AliasChoices("table_number", "tableNumber"))
    items: List[OrderItemIn] = []
    payment_method: Optional[str] = Field(default=None, validation_alias=AliasChoices("payment_method", "paymentMethod"))
    notes: Optional[str] = None
    promo_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("promo_code", "promoCode"))


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    product_id: int
    product_name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    kitchen_status: str
    notes: Optional[str] = None


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    order_number: str
    order_type: str
    table_number: Optional[int] = None
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    subtotal_cents: int
    discount_cents: int = 0
    promo_code: Optional[str] = None
    tax_cents: int
    total_cents: int
    notes: Optional[str] = None
    created_at: datetime
    taken_at: Optional[datetime] = None
    prepared_at: Optional[datetime] = None
    served_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    items: List[OrderItemOut] = []


class TicketItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    product_name: str
    quantity: int
    kitchen_status: str
    notes: Optional[str] = None


class TicketOut(BaseModel):
    """Kitchen-facing rendering of an open order."""

    model_config = ConfigDict(from_attributes=True)
    id: str
    order_number: str
    order_type: str
    table_number: Optional[int] = None
    status: str
    payment_status: str
    notes: Optional[str] = None
    created_at: datetime
    items: List[TicketItemOut] = []


class OrdersPage(BaseModel):
    items: List[OrderOut]
    total: int
    limit: int
    offset: int


class SummaryOut(BaseModel):
    business_day: date
    counts: Dict[str, int]
    open_orders: int
    orders_total: int
    paid_revenue_cents: int


class StatusReq(BaseModel):
    status: str


class ItemStatusReq(BaseModel):
    status: str


class CancelReq(BaseModel):
    reason: Optional[str] = None


class PaymentReq(BaseModel):
    status: str
    method: Optional[str] = None


class SettingIn(BaseModel):
    value: Any = None
    type: Optional[str] = Field(default=None, validation_alias=AliasChoices("type", "setting_type"))
    description: Optional[str] = None


class SettingOut(BaseModel):
    key: str
    value: Any = None
    type: str
    description: Optional[str] = None
    updated_at: Optional[datetime] = None


class ProductIn(BaseModel):
    name: str
    price_cents: int
    stock: int = 0
    min_stock: int = 0
    category: Optional[str] = None


class StockAdjustReq(BaseModel):
    delta: int


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str
    category: Optional[str] = None
    price_cents: int
    stock: int
    min_stock: int

    @computed_field
    @property
    def availability(self) -> str:
        return availability(self.stock, self.min_stock)


class PromoIn(BaseModel):
    code: str
    discount_type: str = Field(validation_alias=AliasChoices("discount_type", "discountType"))
    discount_value: float = Field(validation_alias=AliasChoices("discount_value", "discountValue"))
    description: Optional[str] = None
    min_order_cents: int = Field(default=0, validation_alias=AliasChoices("min_order_cents", "minOrderCents"))
    max_uses: Optional[int] = Field(default=None, validation_alias=AliasChoices("max_uses", "maxUses"))
    valid_from: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("valid_from", "validFrom"))
    valid_until: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("valid_until", "validUntil"))


class PromoOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    min_order_cents: int
    max_uses: Optional[int] = None
    uses_count: int
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool


class PromoCheckReq(BaseModel):
    code: str
    subtotal_cents: int = Field(validation_alias=AliasChoices("subtotal_cents", "subtotalCents"))


class PromoQuoteOut(BaseModel):
    """What the kiosk shows before checkout; nothing is redeemed yet."""

    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    discount_cents: int
