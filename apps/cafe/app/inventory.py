from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import InsufficientStock, InvalidInput, NotFound
from .models import Product, utcnow


log = logging.getLogger("cafe.inventory")


def availability(stock: int, min_stock: int) -> str:
    if stock <= 0:
        return "out"
    if stock <= min_stock:
        return "low"
    return "available"


def _conditional_decrement(s: Session, product_id: int, qty: int) -> bool:
    res = s.execute(
        update(Product)
        .where(Product.id == product_id, Product.deleted_at.is_(None), Product.stock >= qty)
        .values(stock=Product.stock - qty)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def reserve(s: Session, product_id: int, qty: int) -> None:
    """Take ``qty`` units out of stock or raise; stock never drops below zero."""
    if qty <= 0:
        raise InvalidInput("quantity must be positive", product_id=product_id)
    if _conditional_decrement(s, product_id, qty):
        return
    p = s.get(Product, product_id, populate_existing=True)
    if p is None or p.deleted_at is not None:
        raise NotFound(f"product {product_id} not found", product_id=product_id)
    raise InsufficientStock(product_id, qty, max(0, p.stock), name=p.name)


def reserve_many(s: Session, lines: Mapping[int, int]) -> Dict[int, Product]:
    """
    Reserve every line of a basket inside the caller's transaction.

    Lines are applied in product-id order so two baskets sharing products
    lock them in the same order. A failing line raises and the caller's
    rollback undoes the lines already applied.
    """
    if not lines:
        raise InvalidInput("order has no items")
    for pid in sorted(lines):
        try:
            reserve(s, pid, lines[pid])
        except NotFound as e:
            # a stale kiosk catalog; a bad basket, not a missing resource
            raise InvalidInput(f"product {pid} is not on the menu", product_id=pid) from e
    rows = s.execute(
        select(Product)
        .where(Product.id.in_(list(lines)))
        .execution_options(populate_existing=True)
    ).scalars().all()
    log.info("stock reserved", extra={"status": "reserved"})
    return {p.id: p for p in rows}


def release(s: Session, product_id: int, qty: int) -> None:
    if qty <= 0:
        return
    s.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + qty)
        .execution_options(synchronize_session=False)
    )


def create_product(
    s: Session,
    name: str,
    price_cents: int,
    stock: int = 0,
    min_stock: int = 0,
    category: Optional[str] = None,
) -> Product:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("product name is required")
    if price_cents < 0:
        raise InvalidInput("price must not be negative")
    if stock < 0 or min_stock < 0:
        raise InvalidInput("stock and min_stock must not be negative")
    p = Product(name=name, price_cents=price_cents, stock=stock, min_stock=min_stock, category=category)
    s.add(p)
    s.flush()
    log.info("product created", extra={"status": availability(p.stock, p.min_stock)})
    return p


def _live_product(s: Session, product_id: int) -> Product:
    p = s.get(Product, product_id, populate_existing=True)
    if p is None or p.deleted_at is not None:
        raise NotFound(f"product {product_id} not found", product_id=product_id)
    return p


def adjust_stock(s: Session, product_id: int, delta: int) -> Product:
    """Restock (delta > 0) or correct (delta < 0) a product; never below zero."""
    _live_product(s, product_id)
    if delta < 0 and not _conditional_decrement(s, product_id, -delta):
        p = _live_product(s, product_id)
        raise InvalidInput(
            f"cannot remove {-delta} of {p.name}, only {p.stock} in stock",
            product_id=product_id,
        )
    if delta > 0:
        release(s, product_id, delta)
    return _live_product(s, product_id)


def soft_delete(s: Session, product_id: int) -> Product:
    p = _live_product(s, product_id)
    p.deleted_at = utcnow()
    s.flush()
    return p


def list_catalog(s: Session) -> List[Product]:
    return list(
        s.execute(
            select(Product).where(Product.deleted_at.is_(None)).order_by(Product.category, Product.name)
        ).scalars()
    )


def low_stock(s: Session) -> List[Product]:
    return list(
        s.execute(
            select(Product)
            .where(Product.deleted_at.is_(None), Product.stock <= Product.min_stock)
            .order_by(Product.stock, Product.name)
        ).scalars()
    )
