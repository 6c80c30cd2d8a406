from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import DB_SCHEMA, Base


ORDER_TYPES = ("dine-in", "takeaway")
ORDER_STATUSES = ("pending", "preparing", "ready", "served", "cancelled")
TERMINAL_STATUSES = ("served", "cancelled")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
KITCHEN_STATUSES = ("queued", "in-progress", "done")
DISCOUNT_TYPES = ("percentage", "fixed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fk(target: str) -> str:
    return f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_nonneg"),
        {"schema": DB_SCHEMA} if DB_SCHEMA else {},
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    category: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    price_cents: Mapped[int] = mapped_column(BigInteger)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    min_stock: Mapped[int] = mapped_column(Integer, default=0)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("business_day", "sequence_no", name="uq_orders_day_sequence"),
        {"schema": DB_SCHEMA} if DB_SCHEMA else {},
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), unique=True)
    business_day: Mapped[date] = mapped_column(Date, index=True)
    sequence_no: Mapped[int] = mapped_column(Integer)
    order_type: Mapped[str] = mapped_column(String(16))  # dine-in|takeaway
    table_number: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    payment_status: Mapped[str] = mapped_column(String(16), default="pending")
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    promo_code_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    promo_code: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    taken_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    prepared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    served_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", order_by="OrderItem.id", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version_id}


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_pos"),
        {"schema": DB_SCHEMA} if DB_SCHEMA else {},
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("orders.id")), index=True)
    product_id: Mapped[int] = mapped_column(Integer)
    # snapshot at order time; catalog edits never reach placed orders
    product_name: Mapped[str] = mapped_column(String(200))
    unit_price_cents: Mapped[int] = mapped_column(BigInteger)
    quantity: Mapped[int] = mapped_column(Integer)
    line_total_cents: Mapped[int] = mapped_column(BigInteger)
    kitchen_status: Mapped[str] = mapped_column(String(16), default="queued")  # queued|in-progress|done
    reserved_qty: Mapped[int] = mapped_column(Integer, default=0)
    notes: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    order: Mapped[Order] = relationship(back_populates="items")


class AppSetting(Base):
    __tablename__ = "app_settings"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    value_type: Mapped[str] = mapped_column(String(16), default="string")  # boolean|number|json|string
    description: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class OrderSequence(Base):
    __tablename__ = "order_sequences"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    business_day: Mapped[date] = mapped_column(Date, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0)


class Idempotency(Base):
    __tablename__ = "order_idempotency"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(36))
    request_hash: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("uses_count >= 0", name="ck_promo_codes_uses_nonneg"),
        {"schema": DB_SCHEMA} if DB_SCHEMA else {},
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    discount_type: Mapped[str] = mapped_column(String(16))  # percentage|fixed
    percent_off: Mapped[Optional[float]] = mapped_column(Float, default=None)
    amount_off_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    min_order_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    uses_count: Mapped[int] = mapped_column(Integer, default=0)
    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def discount_value(self) -> float:
        """Percent for percentage codes, cents for fixed ones."""
        if self.discount_type == "percentage":
            return float(self.percent_off or 0)
        return float(self.amount_off_cents or 0)
