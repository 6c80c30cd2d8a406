"""
Promo codes applied at kiosk checkout.

A code is usable while it is active, inside its validity window, below its
use limit, and the basket subtotal reaches its minimum. The discount never
exceeds the subtotal. Redemption bumps ``uses_count`` with a conditional
update inside the order's unit of work, so two kiosks cannot both take the
last use.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import InvalidInput, NotFound
from .models import DISCOUNT_TYPES, PromoCode, utcnow


log = logging.getLogger("cafe.promos")


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values; everything is stored in UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def discount_for(promo: PromoCode, subtotal_cents: int) -> int:
    if promo.discount_type == "percentage":
        raw = Decimal(subtotal_cents) * Decimal(str(promo.percent_off or 0)) / Decimal(100)
        amount = int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    else:
        amount = int(promo.amount_off_cents or 0)
    return max(0, min(amount, subtotal_cents))


def check(promo: PromoCode, subtotal_cents: int, now: Optional[datetime] = None) -> None:
    """Raise InvalidInput naming the first rule the code fails."""
    now = _as_utc(now) or utcnow()
    code = promo.code
    if not promo.is_active:
        raise InvalidInput(f"promo code {code} is no longer active", promo_code=code)
    valid_from = _as_utc(promo.valid_from)
    if valid_from is not None and now < valid_from:
        raise InvalidInput(f"promo code {code} is not valid yet", promo_code=code)
    valid_until = _as_utc(promo.valid_until)
    if valid_until is not None and now >= valid_until:
        raise InvalidInput(f"promo code {code} has expired", promo_code=code)
    if promo.max_uses is not None and promo.uses_count >= promo.max_uses:
        raise InvalidInput(f"promo code {code} has been used up", promo_code=code)
    if subtotal_cents < promo.min_order_cents:
        raise InvalidInput(
            f"promo code {code} needs an order of at least {promo.min_order_cents} cents",
            promo_code=code,
            min_order_cents=promo.min_order_cents,
        )


def evaluate(
    s: Session, code: str, subtotal_cents: int, now: Optional[datetime] = None
) -> Tuple[PromoCode, int]:
    """Look a code up and price it against a subtotal without redeeming it."""
    normalized = normalize_code(code)
    promo = s.execute(
        select(PromoCode).where(PromoCode.code == normalized).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if promo is None:
        raise InvalidInput(f"unknown promo code {normalized}", promo_code=normalized)
    check(promo, subtotal_cents, now)
    return promo, discount_for(promo, subtotal_cents)


def redeem(s: Session, promo: PromoCode) -> None:
    """Count one use; must run in the same unit of work as the order."""
    res = s.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo.id,
            PromoCode.is_active.is_(True),
            or_(PromoCode.max_uses.is_(None), PromoCode.uses_count < PromoCode.max_uses),
        )
        .values(uses_count=PromoCode.uses_count + 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvalidInput(f"promo code {promo.code} has been used up", promo_code=promo.code)


def create_promo(
    s: Session,
    code: str,
    discount_type: str,
    discount_value: float,
    description: Optional[str] = None,
    min_order_cents: int = 0,
    max_uses: Optional[int] = None,
    valid_from: Optional[datetime] = None,
    valid_until: Optional[datetime] = None,
) -> PromoCode:
    normalized = normalize_code(code)
    if not normalized or len(normalized) > 32:
        raise InvalidInput("promo code must be 1-32 characters")
    if discount_type not in DISCOUNT_TYPES:
        raise InvalidInput(f"discount type must be one of {', '.join(DISCOUNT_TYPES)}")
    if discount_value is None or discount_value <= 0:
        raise InvalidInput("discount value must be positive")
    if discount_type == "percentage" and discount_value > 100:
        raise InvalidInput("a percentage discount cannot exceed 100")
    if min_order_cents < 0:
        raise InvalidInput("minimum order amount cannot be negative")
    if max_uses is not None and max_uses <= 0:
        raise InvalidInput("max uses must be positive")
    valid_from, valid_until = _as_utc(valid_from), _as_utc(valid_until)
    if valid_from and valid_until and valid_until <= valid_from:
        raise InvalidInput("promo code must end after it starts")
    promo = PromoCode(
        code=normalized,
        description=description,
        discount_type=discount_type,
        percent_off=float(discount_value) if discount_type == "percentage" else None,
        amount_off_cents=int(discount_value) if discount_type == "fixed" else None,
        min_order_cents=min_order_cents,
        max_uses=max_uses,
        uses_count=0,
        valid_from=valid_from,
        valid_until=valid_until,
        is_active=True,
    )
    s.add(promo)
    try:
        s.flush()
    except IntegrityError as e:
        raise InvalidInput(f"promo code {normalized} already exists", promo_code=normalized) from e
    log.info("promo code %s created", normalized)
    return promo


def deactivate(s: Session, promo_id: int) -> PromoCode:
    # codes stay in the table: placed orders keep pointing at them
    promo = s.get(PromoCode, promo_id, populate_existing=True)
    if promo is None:
        raise NotFound(f"promo code {promo_id} not found", promo_id=promo_id)
    promo.is_active = False
    s.flush()
    log.info("promo code %s deactivated", promo.code)
    return promo


def list_promos(s: Session) -> List[PromoCode]:
    return list(
        s.execute(select(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.id.desc())).scalars().all()
    )
