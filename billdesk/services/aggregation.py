"""
Aggregation engine - merges order items into payable display rows.

Algorithm:
1. Walk live items (reconciliation guard), grouping by grouping key
2. First identity seen becomes the row id; later ones add their quantity
3. Paid quantity per row = sum over constituents of the clamped ledger paid
   quantity, or the full quantity once the bill is settled
4. remaining = max(0, total - paid)
"""

import logging
from typing import Dict, Iterable, List, Optional

from billdesk.models.bill import Bill, BillStatus, ItemPayment
from billdesk.models.order import Order
from billdesk.schemas.bill import AggregatedItem
from billdesk.services.reconciliation import LiveItem, effective_paid, ledger_index, live_items

logger = logging.getLogger(__name__)


class _Row:
    def __init__(self, item: LiveItem):
        self.id = item.identity
        self.name = item.name
        self.price_cents = item.price_cents
        self.addons = item.addons
        self.order_id = item.order_id
        self.total_quantity = 0
        self.item_ids: List[str] = []

    def add(self, item: LiveItem) -> None:
        self.total_quantity += item.quantity
        self.item_ids.append(item.identity)


def is_fully_settled(status: BillStatus, paid_cents: int, total_cents: int) -> bool:
    return status == BillStatus.PAID and paid_cents >= total_cents and total_cents - paid_cents == 0


def paid_quantity_for(
    item_ids: Iterable[str],
    live: Dict[str, LiveItem],
    ledger: Dict[str, ItemPayment],
    settled: bool = False,
) -> int:
    """Paid quantity of a group of identities, ignoring ones that no longer exist."""
    total = 0
    for identity in item_ids:
        item = live.get(identity)
        if item is None:
            continue
        if settled:
            total += item.quantity
        else:
            total += effective_paid(ledger.get(identity), item)
    return total


def group_live_items(live: Dict[str, LiveItem]) -> Dict[str, _Row]:
    rows: Dict[str, _Row] = {}
    for item in live.values():
        row = rows.get(item.key)
        if row is None:
            row = rows[item.key] = _Row(item)
        row.add(item)
    return rows


def aggregate_items(
    orders: Iterable[Order],
    item_payments: Iterable[ItemPayment] = (),
    status: BillStatus = BillStatus.DRAFT,
    paid_cents: int = 0,
    total_cents: int = 0,
) -> List[AggregatedItem]:
    """Aggregate items of all orders into rows with paid/remaining quantities."""
    live = live_items(orders)
    ledger = ledger_index(item_payments)
    settled = is_fully_settled(status, paid_cents, total_cents)

    result = []
    for row in group_live_items(live).values():
        paid = paid_quantity_for(row.item_ids, live, ledger, settled)
        logger.debug("Row %s (%s): paid %s of %s", row.id, row.name, paid, row.total_quantity)
        result.append(AggregatedItem(
            id=row.id,
            name=row.name,
            price_cents=row.price_cents,
            total_quantity=row.total_quantity,
            paid_quantity=paid,
            remaining_quantity=max(0, row.total_quantity - paid),
            addons=row.addons,
            has_addons=bool(row.addons),
            order_id=row.order_id,
        ))
    return result


def aggregate_bill_items(bill: Bill, orders: Iterable[Order]) -> List[AggregatedItem]:
    return aggregate_items(
        orders,
        bill.item_payments,
        bill.status,
        bill.paid_cents,
        bill.total_cents,
    )


def constituents_of(row_id: str, live: Dict[str, LiveItem]) -> Optional[List[LiveItem]]:
    """
    Live items sharing the grouping key of the item identified by row_id.

    Returns None when row_id does not identify a live item.
    """
    target = live.get(row_id)
    if target is None:
        return None
    return [item for item in live.values() if item.key == target.key]
