"""
Bill status state machine.

The status is derived, never stored independently: the only explicit
transition is cancellation, which is sticky.

    draft    paid == 0
    partial  0 < paid, not fully settled
    paid     paid >= total, every live item and every session fully paid
    overdue  any non-paid status once the due date has passed
"""

from datetime import datetime, timezone
from typing import Dict, Optional

from billdesk.models.bill import Bill, BillStatus
from billdesk.services.reconciliation import LiveItem, live_items_fully_paid


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def derive_status(
    current: BillStatus,
    paid_cents: int,
    total_cents: int,
    items_fully_paid: bool,
    sessions_fully_paid: bool,
    due_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> BillStatus:
    if current == BillStatus.CANCELLED:
        return BillStatus.CANCELLED

    if paid_cents > 0 and paid_cents >= total_cents and items_fully_paid and sessions_fully_paid:
        status = BillStatus.PAID
    elif paid_cents > 0:
        status = BillStatus.PARTIAL
    else:
        status = BillStatus.DRAFT

    now = now or datetime.now(timezone.utc)
    if due_date is not None and _aware(due_date) < _aware(now) and status != BillStatus.PAID:
        status = BillStatus.OVERDUE
    return status


def status_for(bill: Bill, live: Dict[str, LiveItem], now: Optional[datetime] = None) -> BillStatus:
    """Status of a bill given the live items of its orders."""
    return derive_status(
        current=bill.status,
        paid_cents=bill.paid_cents,
        total_cents=bill.total_cents,
        items_fully_paid=live_items_fully_paid(bill.item_payments, live),
        sessions_fully_paid=all(session.is_settled() for session in bill.session_payments),
        due_date=bill.due_date,
        now=now,
    )
