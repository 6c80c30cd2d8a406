from __future__ import annotations

from typing import Iterator

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from .models import Order


def _queue_query():
    return (
        select(Order)
        .where(
            or_(
                and_(Order.status == "pending", Order.payment_status == "completed"),
                Order.status == "preparing",
            )
        )
        .options(selectinload(Order.items))
        .order_by(Order.created_at.asc(), Order.business_day.asc(), Order.sequence_no.asc())
        .execution_options(populate_existing=True)
    )


class TicketQueueView:
    """
    Paid, unfulfilled orders in FIFO order (oldest first, ties by order number).

    Holds only the session: every iteration re-runs the query, so the view
    restarts cleanly on each poll and cannot drift from the order store.
    """

    def __init__(self, s: Session):
        self._s = s

    def __iter__(self) -> Iterator[Order]:
        yield from self._s.execute(_queue_query()).scalars()


def current_tickets(s: Session) -> TicketQueueView:
    return TicketQueueView(s)
