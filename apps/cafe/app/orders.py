"""
Order store: the single authority for order identity and status.

Every public operation runs as one unit of work against the store and is
retried on transient failures (lost number allocation, busy store). Status
changes follow ORDER_TRANSITIONS; the only derived transition the store makes
on its own is preparing -> ready, once every item is done and the payment is
completed.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import inventory, promos, sequence
from . import settings as app_settings
from .db import locked, unit_of_work
from .errors import (
    AllocationConflict,
    IdempotencyConflict,
    InvalidInput,
    InvalidTransition,
    NotFound,
)
from .models import (
    KITCHEN_STATUSES,
    ORDER_STATUSES,
    ORDER_TYPES,
    PAYMENT_STATUSES,
    TERMINAL_STATUSES,
    Idempotency,
    Order,
    OrderItem,
    utcnow,
)
from .retry import retry_transient
from .schemas import OrderCreate


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


RECENT_TERMINAL_HOURS = float(_env_or("CAFE_RECENT_TERMINAL_HOURS", "24"))

ORDER_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("preparing", "cancelled"),
    "preparing": ("ready", "cancelled"),
    "ready": ("served", "cancelled"),
    "served": (),
    "cancelled": (),
}
ITEM_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "queued": ("in-progress", "done"),
    "in-progress": ("done",),
    "done": (),
}
PAYMENT_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("completed", "failed"),
    "failed": ("pending", "completed"),
    "completed": ("refunded",),
    "refunded": (),
}
PAYMENT_ALIASES = {"paid": "completed", "unpaid": "pending"}
KITCHEN_ALIASES = {"in_progress": "in-progress", "in progress": "in-progress"}

log = logging.getLogger("cafe.orders")


def _normalize(value: str, allowed, aliases=None, what: str = "status") -> str:
    v = (value or "").strip().lower()
    v = (aliases or {}).get(v, v)
    if v not in allowed:
        raise InvalidInput(f"unknown {what} {value!r}; expected one of {', '.join(allowed)}")
    return v


def _tax_cents(subtotal_cents: int, rate_pct: float) -> int:
    tax = Decimal(subtotal_cents) * Decimal(str(rate_pct)) / Decimal(100)
    return int(tax.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _request_hash(req: OrderCreate) -> str:
    body = json.dumps(req.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(body.encode()).hexdigest()


def _validate(req: OrderCreate, table_required: bool) -> str:
    order_type = _normalize(req.order_type, ORDER_TYPES, {"dine_in": "dine-in", "take-away": "takeaway"}, "order type")
    if not req.items:
        raise InvalidInput("order has no items")
    for it in req.items:
        if it.qty <= 0:
            raise InvalidInput(f"quantity for product {it.product_id} must be positive", product_id=it.product_id)
    if order_type == "dine-in" and table_required:
        # only a table number that will be stored is checked
        if req.table_number is None:
            raise InvalidInput("table number is required for dine-in orders")
        if req.table_number <= 0:
            raise InvalidInput("table number must be positive")
    return order_type


def _load(s: Session, order_id: str, for_update: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if for_update:
        stmt = locked(s, stmt)
    o = s.execute(stmt).scalar_one_or_none()
    if o is None:
        raise NotFound(f"order {order_id} not found", order_id=order_id)
    return o


def _log_change(o: Order, message: str) -> None:
    log.info(message, extra={"order_id": o.id, "order_number": o.order_number, "status": o.status})


def _apply_status(s: Session, o: Order, target: str, reason: Optional[str] = None) -> None:
    now = utcnow()
    if target == "preparing" and o.taken_at is None:
        o.taken_at = now
    elif target == "ready":
        o.prepared_at = now
    elif target == "served":
        o.served_at = now
    elif target == "cancelled":
        for it in o.items:
            if it.reserved_qty > 0:
                inventory.release(s, it.product_id, it.reserved_qty)
                it.reserved_qty = 0
        o.cancelled_at = now
        o.cancel_reason = reason
    o.status = target


def _ready_blockers(o: Order) -> List[str]:
    blockers = []
    if o.payment_status != "completed":
        blockers.append(f"payment is {o.payment_status}")
    open_items = [it for it in o.items if it.kitchen_status != "done"]
    if open_items:
        blockers.append(f"{len(open_items)} item(s) not done")
    return blockers


def _maybe_ready(s: Session, o: Order) -> None:
    if o.status == "preparing" and not _ready_blockers(o):
        _apply_status(s, o, "ready")
        _log_change(o, "order ready")


@retry_transient
def create_order(
    s: Session,
    req: OrderCreate,
    idempotency_key: Optional[str] = None,
    settings: Optional[app_settings.SettingsService] = None,
    deadline: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Order:
    if settings is not None:
        table_required = settings.get_bool(app_settings.TABLE_NUMBER_ENABLED)
        tax_rate = settings.get_number(app_settings.TAX_RATE_PCT)
    else:
        table_required = bool(app_settings.read_value(s, app_settings.TABLE_NUMBER_ENABLED))
        tax_rate = float(app_settings.read_value(s, app_settings.TAX_RATE_PCT))
    order_type = _validate(req, table_required)
    request_hash = _request_hash(req) if idempotency_key else ""
    try:
        with unit_of_work(s, deadline):
            if idempotency_key:
                prior = s.get(Idempotency, idempotency_key)
                if prior is not None:
                    if prior.request_hash != request_hash:
                        raise IdempotencyConflict("Idempotency-Key was already used for a different order")
                    return _load(s, prior.order_id)

            lines: Dict[int, int] = {}
            for it in req.items:
                lines[it.product_id] = lines.get(it.product_id, 0) + it.qty
            products = inventory.reserve_many(s, lines)
            alloc = sequence.allocate(s, sequence.business_day(now))

            o = Order(
                id=str(uuid.uuid4()),
                order_number=alloc.order_number,
                business_day=alloc.business_day,
                sequence_no=alloc.value,
                order_type=order_type,
                table_number=req.table_number if order_type == "dine-in" and table_required else None,
                status="pending",
                payment_status="pending",
                payment_method=req.payment_method,
                notes=req.notes,
            )
            if now is not None:
                o.created_at = now
            subtotal = 0
            for it in req.items:
                p = products[it.product_id]
                line_total = int(p.price_cents) * it.qty
                subtotal += line_total
                o.items.append(OrderItem(
                    product_id=p.id,
                    product_name=p.name,
                    unit_price_cents=int(p.price_cents),
                    quantity=it.qty,
                    line_total_cents=line_total,
                    kitchen_status="queued",
                    reserved_qty=it.qty,
                    notes=it.notes,
                ))
            discount = 0
            promo_code = promos.normalize_code(req.promo_code)
            if promo_code:
                promo, discount = promos.evaluate(s, promo_code, subtotal, now)
                promos.redeem(s, promo)
                o.promo_code_id = promo.id
                o.promo_code = promo.code
            o.subtotal_cents = subtotal
            o.discount_cents = discount
            # tax applies to what the customer actually pays for
            o.tax_cents = _tax_cents(subtotal - discount, tax_rate)
            o.total_cents = subtotal - discount + o.tax_cents
            s.add(o)
            if idempotency_key:
                s.add(Idempotency(key=idempotency_key, order_id=o.id, request_hash=request_hash))
            s.flush()
    except IntegrityError as e:
        # Order number or request token taken by a concurrent commit; the retry
        # re-reads both.
        raise AllocationConflict("order number or request token collided, retry") from e
    _log_change(o, "order created")
    return o


@retry_transient
def transition(
    s: Session,
    order_id: str,
    target: str,
    reason: Optional[str] = None,
    deadline: Optional[float] = None,
) -> Order:
    target = _normalize(target, ORDER_STATUSES)
    with unit_of_work(s, deadline):
        o = _load(s, order_id, for_update=True)
        if o.status == target == "preparing":
            return o
        if target not in ORDER_TRANSITIONS[o.status]:
            raise InvalidTransition(
                f"order {o.order_number} cannot go from {o.status} to {target}",
                current=o.status,
                target=target,
            )
        if target == "ready":
            blockers = _ready_blockers(o)
            if blockers:
                raise InvalidTransition(
                    f"order {o.order_number} is not ready: {'; '.join(blockers)}",
                    current=o.status,
                    target=target,
                )
        _apply_status(s, o, target, reason)
        s.flush()
    _log_change(o, f"order {target}")
    return o


def cancel(s: Session, order_id: str, reason: Optional[str] = None, deadline: Optional[float] = None) -> Order:
    return transition(s, order_id, "cancelled", reason=reason, deadline=deadline)


@retry_transient
def update_item_kitchen_status(
    s: Session,
    order_id: str,
    item_id: int,
    status: str,
    deadline: Optional[float] = None,
) -> Order:
    status = _normalize(status, KITCHEN_STATUSES, KITCHEN_ALIASES, "kitchen status")
    with unit_of_work(s, deadline):
        o = _load(s, order_id, for_update=True)
        item = next((it for it in o.items if it.id == item_id), None)
        if item is None:
            raise NotFound(f"item {item_id} not found on order {o.order_number}", order_id=o.id, item_id=item_id)
        if o.status not in ("pending", "preparing"):
            raise InvalidTransition(
                f"order {o.order_number} is {o.status}; its items can no longer change",
                current=o.status,
                target=status,
                item_id=item_id,
            )
        if item.kitchen_status == status:
            return o
        if status not in ITEM_TRANSITIONS[item.kitchen_status]:
            raise InvalidTransition(
                f"item {item_id} cannot go from {item.kitchen_status} to {status}",
                current=item.kitchen_status,
                target=status,
                item_id=item_id,
            )
        item.kitchen_status = status
        if o.status == "pending":
            _apply_status(s, o, "preparing")
            _log_change(o, "order preparing")
        o.updated_at = utcnow()
        _maybe_ready(s, o)
        s.flush()
    return o


@retry_transient
def set_payment_status(
    s: Session,
    order_id: str,
    status: str,
    method: Optional[str] = None,
    deadline: Optional[float] = None,
) -> Order:
    target = _normalize(status, PAYMENT_STATUSES, PAYMENT_ALIASES, "payment status")
    with unit_of_work(s, deadline):
        o = _load(s, order_id, for_update=True)
        if o.payment_status == target:
            return o
        if target not in PAYMENT_TRANSITIONS[o.payment_status]:
            raise InvalidTransition(
                f"payment of {o.order_number} cannot go from {o.payment_status} to {target}",
                current=o.payment_status,
                target=target,
            )
        if o.status == "cancelled" and target != "refunded":
            raise InvalidTransition(
                f"order {o.order_number} is cancelled; only a refund is possible",
                current=o.payment_status,
                target=target,
            )
        if target == "refunded" and o.status not in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"order {o.order_number} is {o.status}; refunds need a served or cancelled order",
                current=o.payment_status,
                target=target,
            )
        o.payment_status = target
        if method:
            o.payment_method = method
        _maybe_ready(s, o)
        s.flush()
    log.info(
        "payment %s", target,
        extra={"order_id": o.id, "order_number": o.order_number, "status": o.status},
    )
    return o


def get_order(s: Session, order_id: str) -> Order:
    return _load(s, order_id)


def get_by_number(s: Session, order_number: str) -> Order:
    number = (order_number or "").strip().upper()
    o = s.execute(select(Order).where(Order.order_number == number)).scalar_one_or_none()
    if o is None:
        raise NotFound(f"order {number} not found", order_number=number)
    return o


def admin_orders(
    s: Session,
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[List[Order], int]:
    """Non-terminal orders plus served/cancelled ones touched recently, newest first."""
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    cutoff = (now or utcnow()) - timedelta(hours=RECENT_TERMINAL_HOURS)
    cond = or_(Order.status.notin_(TERMINAL_STATUSES), Order.updated_at >= cutoff)
    if status:
        cond = cond & (Order.status == _normalize(status, ORDER_STATUSES))
    total = s.execute(select(func.count()).select_from(Order).where(cond)).scalar_one()
    rows = s.execute(
        select(Order)
        .where(cond)
        .options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.sequence_no.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return list(rows), int(total)


def summary(s: Session, day: Optional[date] = None) -> dict:
    day = day or sequence.business_day()
    counts = {st: 0 for st in ORDER_STATUSES}
    for st, n in s.execute(
        select(Order.status, func.count()).where(Order.business_day == day).group_by(Order.status)
    ).all():
        counts[st] = int(n)
    revenue = s.execute(
        select(func.coalesce(func.sum(Order.total_cents), 0)).where(
            Order.business_day == day, Order.payment_status == "completed"
        )
    ).scalar_one()
    return {
        "business_day": day,
        "counts": counts,
        "open_orders": sum(n for st, n in counts.items() if st not in TERMINAL_STATUSES),
        "orders_total": sum(counts.values()),
        "paid_revenue_cents": int(revenue),
    }
