"""
Payment ledger commands.

apply_payment turns a request ("pay N units of these rows") into a
LedgerDelta: the complete new ledger plus the bill-level payment record.
Inputs are never mutated; every check runs before anything is built, so a
request is either applied whole or rejected whole.

Allocation algorithm:
1. Resolve each requested row to the live items sharing its grouping key
2. Walk those items in order, skipping ones with no unpaid capacity
   (current quantity - clamped paid quantity - earlier lines of this request)
3. Any quantity left over rejects the whole request
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, NamedTuple, Optional

from pydantic import BaseModel

from billdesk.models.bill import (
    Bill,
    BillPaymentRecord,
    BillStatus,
    ItemPayment,
    ItemPaymentRecord,
    PaidItemDetail,
    PaidSessionDetail,
    PaymentDetails,
    PaymentMethod,
    PaymentTracking,
    SessionPayment,
    SessionPaymentRecord,
)
from billdesk.models.base import PyObjectId
from billdesk.models.order import Order
from billdesk.services.aggregation import constituents_of
from billdesk.services.item_identity import ItemIdentity
from billdesk.services.reconciliation import LiveItem, effective_paid, ledger_index, live_items
from billdesk.utils.payment_validation import (
    BillStateError,
    OverpaymentError,
    PaymentValidationError,
    StaleReferenceError,
    validate_amount,
    validate_payment_items,
)

logger = logging.getLogger(__name__)


class Allocation(NamedTuple):
    item: LiveItem
    quantity: int


class LedgerDelta(BaseModel):
    item_payments: List[ItemPayment]
    paid_cents: int
    amount_cents: int
    paid_items: List[PaidItemDetail]
    record: BillPaymentRecord


class SessionDelta(BaseModel):
    session_payments: List[SessionPayment]
    paid_cents: int
    remaining_after_cents: int
    record: BillPaymentRecord


def _parse_method(method) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError:
        raise PaymentValidationError(f"Unknown payment method: {method!r}")


def _ensure_payable(bill: Bill) -> None:
    if bill.status == BillStatus.CANCELLED:
        raise BillStateError("Cannot record payments on a cancelled bill")


def _is_known_reference(row_id: str, bill: Bill) -> bool:
    """Whether row_id once pointed at an item of this bill."""
    if any(entry.item_id == row_id for entry in bill.item_payments):
        return True
    parsed = ItemIdentity.parse(row_id)
    return parsed is not None and parsed.order_id in {str(oid) for oid in bill.orders}


def expand_payment_request(
    bill: Bill,
    lines: Iterable,
    live: Dict[str, LiveItem],
) -> List[Allocation]:
    """Distribute each requested row quantity over its live constituent items."""
    ledger = ledger_index(bill.item_payments)
    pending: Dict[str, int] = {}
    allocations: List[Allocation] = []

    for line in lines:
        group = constituents_of(line.item_id, live)
        if group is None:
            if _is_known_reference(line.item_id, bill):
                raise StaleReferenceError(
                    f"Item {line.item_id} no longer exists on this bill"
                )
            raise PaymentValidationError(f"Item {line.item_id} is not part of this bill")

        remaining = line.quantity
        for item in group:
            if remaining <= 0:
                break
            already_paid = effective_paid(ledger.get(item.identity), item) + pending.get(item.identity, 0)
            available = item.quantity - already_paid
            if available <= 0:
                continue
            quantity = min(remaining, available)
            allocations.append(Allocation(item, quantity))
            pending[item.identity] = pending.get(item.identity, 0) + quantity
            remaining -= quantity

        if remaining > 0:
            raise OverpaymentError(
                f"Requested quantity ({line.quantity}) is more than the remaining "
                f"quantity ({line.quantity - remaining}) for item \"{group[0].name}\""
            )

    return allocations


def new_entry_for(item: LiveItem) -> ItemPayment:
    return ItemPayment(
        order_id=PyObjectId(item.order_id),
        item_id=item.identity,
        item_name=item.name,
        quantity=item.quantity,
        paid_quantity=0,
        price_per_unit_cents=item.price_cents,
        total_price_cents=item.price_cents * item.quantity,
        paid_amount_cents=0,
        is_paid=False,
        addons=list(item.addons),
    )


def sync_with_live(entry: ItemPayment, item: LiveItem) -> None:
    """
    Bring an entry in line with its live item after an order edit.

    The recorded paid quantity is never reduced: when the item shrank below
    it, the entry keeps a quantity equal to what was paid.
    """
    entry.quantity = max(item.quantity, entry.paid_quantity)
    if entry.paid_quantity == 0:
        entry.item_name = item.name
        entry.price_per_unit_cents = item.price_cents
        entry.addons = list(item.addons)
    entry.total_price_cents = entry.price_per_unit_cents * entry.quantity
    entry.is_paid = entry.paid_quantity == entry.quantity


def sync_entries(entries: Iterable[ItemPayment], live: Dict[str, LiveItem]) -> None:
    """Sync every entry whose item still exists; orphans are left as recorded."""
    for entry in entries:
        item = live.get(entry.item_id)
        if item is not None:
            sync_with_live(entry, item)


def apply_payment(
    bill: Bill,
    orders: Iterable[Order],
    lines: List,
    method,
    payer_id,
    now: Optional[datetime] = None,
) -> LedgerDelta:
    """Pay for quantities of aggregated rows. Raises before building anything on error."""
    _ensure_payable(bill)
    validate_payment_items(lines)
    method = _parse_method(method)
    now = now or datetime.now(timezone.utc)
    payer = PyObjectId(str(payer_id))

    live = live_items(orders)
    allocations = expand_payment_request(bill, lines, live)

    entries = [entry.model_copy(deep=True) for entry in bill.item_payments]
    index = ledger_index(entries)
    paid_items: List[PaidItemDetail] = []
    amount_cents = 0

    for item, quantity in allocations:
        entry = index.get(item.identity)
        if entry is None:
            entry = new_entry_for(item)
            entries.append(entry)
            index[item.identity] = entry

        sync_with_live(entry, item)
        amount = quantity * entry.price_per_unit_cents
        entry.paid_quantity += quantity
        entry.paid_amount_cents = entry.paid_quantity * entry.price_per_unit_cents
        entry.is_paid = entry.paid_quantity == entry.quantity
        entry.tracking = PaymentTracking.QUANTITY
        entry.paid_at = now
        entry.paid_by = payer
        entry.payment_history.append(ItemPaymentRecord(
            quantity=quantity,
            amount_cents=amount,
            paid_at=now,
            paid_by=payer,
            method=method,
        ))

        paid_items.append(PaidItemDetail(item_name=entry.item_name, quantity=quantity, amount_cents=amount))
        amount_cents += amount

    paid_cents = sum(e.paid_amount_cents for e in entries) + sum(s.paid_cents for s in bill.session_payments)
    logger.info(
        "Bill %s: item payment of %s cents over %s allocation(s)",
        bill.bill_number, amount_cents, len(allocations)
    )

    return LedgerDelta(
        item_payments=entries,
        paid_cents=paid_cents,
        amount_cents=amount_cents,
        paid_items=paid_items,
        record=BillPaymentRecord(
            amount_cents=amount_cents,
            method=method,
            paid_by=payer,
            type="partial-items",
            timestamp=now,
            details=PaymentDetails(paid_items=paid_items),
        ),
    )


def apply_session_payment(
    bill: Bill,
    session_id: str,
    amount_cents,
    method,
    payer_id,
    now: Optional[datetime] = None,
) -> SessionDelta:
    """Record an installment against one session's cost."""
    _ensure_payable(bill)
    method = _parse_method(method)
    now = now or datetime.now(timezone.utc)
    payer = PyObjectId(str(payer_id))

    sessions = [session.model_copy(deep=True) for session in bill.session_payments]
    session = next((s for s in sessions if str(s.session_id) == str(session_id)), None)
    if session is None:
        raise PaymentValidationError(f"Session {session_id} is not part of this bill")

    validate_amount(amount_cents, session.remaining_cents)

    session.paid_cents += amount_cents
    session.remaining_cents = max(0, session.session_cost_cents - session.paid_cents)
    session.payments.append(SessionPaymentRecord(
        amount_cents=amount_cents,
        paid_at=now,
        paid_by=payer,
        method=method,
    ))

    paid_cents = sum(e.paid_amount_cents for e in bill.item_payments) + sum(s.paid_cents for s in sessions)

    return SessionDelta(
        session_payments=sessions,
        paid_cents=paid_cents,
        remaining_after_cents=session.remaining_cents,
        record=BillPaymentRecord(
            amount_cents=amount_cents,
            method=method,
            paid_by=payer,
            type="partial-session",
            timestamp=now,
            details=PaymentDetails(paid_sessions=[PaidSessionDetail(
                session_id=session.session_id,
                amount_cents=amount_cents,
                remaining_after_cents=session.remaining_cents,
            )]),
        ),
    )


def missing_entries(bill: Bill, orders: Iterable[Order]) -> List[ItemPayment]:
    """Fresh, unpaid ledger entries for live items the ledger does not know yet."""
    known = {entry.item_id for entry in bill.item_payments}
    return [
        new_entry_for(item)
        for identity, item in live_items(orders).items()
        if identity not in known
    ]


def enforce_entry_integrity(entries: List[ItemPayment]) -> int:
    """
    Clamp and recompute every entry in place so the ledger invariants hold.

    Returns the number of entries that needed a correction.
    """
    corrected = 0
    for entry in entries:
        quantity = max(0, entry.quantity)
        price = max(0, entry.price_per_unit_cents)
        paid_quantity = min(max(0, entry.paid_quantity), quantity)

        if paid_quantity != entry.paid_quantity:
            logger.warning(
                "Correcting paid quantity for item %s (%s): %s -> %s",
                entry.item_id, entry.item_name, entry.paid_quantity, paid_quantity
            )
            corrected += 1
        elif entry.paid_amount_cents != paid_quantity * price:
            corrected += 1

        entry.paid_quantity = paid_quantity
        entry.paid_amount_cents = paid_quantity * price
        entry.total_price_cents = quantity * price
        entry.is_paid = paid_quantity == quantity
    return corrected
