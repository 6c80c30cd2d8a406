"""
Order number allocation.

Numbers are a per-business-day running counter rendered as
``<prefix>-<YYMMDD>-<NNNN>``. The counter row is advanced with a
compare-and-swap UPDATE inside the caller's transaction, so the number is
committed together with the order that carries it, or not at all.
"""
from __future__ import annotations

import logging
import os
from datetime import date, datetime, timezone
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import AllocationConflict
from .models import OrderSequence


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


ORDER_PREFIX = _env_or("CAFE_ORDER_PREFIX", "CMD")
CAFE_TZ = _env_or("CAFE_TZ", "UTC")
CAS_ATTEMPTS = int(_env_or("CAFE_SEQUENCE_CAS_ATTEMPTS", "5"))

log = logging.getLogger("cafe.sequence")


class Allocation(NamedTuple):
    business_day: date
    value: int
    order_number: str


def _tz():
    if CAFE_TZ.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(CAFE_TZ)


def business_day(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(_tz()).date()


def format_number(day: date, value: int, prefix: Optional[str] = None) -> str:
    return f"{prefix or ORDER_PREFIX}-{day:%y%m%d}-{value:04d}"


def _compare_and_swap(s: Session, day: date, expected: int) -> bool:
    res = s.execute(
        update(OrderSequence)
        .where(OrderSequence.business_day == day, OrderSequence.last_value == expected)
        .values(last_value=expected + 1)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def _open_day(s: Session, day: date) -> bool:
    try:
        with s.begin_nested():
            s.add(OrderSequence(business_day=day, last_value=1))
        return True
    except IntegrityError:
        # another handler opened the day first
        return False


def allocate(s: Session, day: date, attempts: Optional[int] = None) -> Allocation:
    max_attempts = attempts or CAS_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        current = s.execute(
            select(OrderSequence.last_value).where(OrderSequence.business_day == day)
        ).scalar_one_or_none()
        if current is None:
            if _open_day(s, day):
                return Allocation(day, 1, format_number(day, 1))
            continue
        if _compare_and_swap(s, day, current):
            value = current + 1
            return Allocation(day, value, format_number(day, value))
        log.debug("sequence CAS lost", extra={"attempt": attempt})
    raise AllocationConflict(f"could not allocate an order number for {day.isoformat()}")
