"""
Reconciliation guard.

Recomputes, from the live orders, which item identities exist right now.
Ledger entries are only trusted through this view: entries for items that
were deleted are ignored, and paid quantities are clamped to the item's
current quantity. Nothing here is cached; call it on every read.
"""

from typing import Dict, Iterable, List, NamedTuple, Optional

from billdesk.models.bill import ItemPayment
from billdesk.models.order import Addon, Order
from billdesk.services.item_identity import identity_for, item_key_for


class LiveItem(NamedTuple):
    identity: str
    order_id: str
    index: int
    name: str
    price_cents: int
    quantity: int
    addons: List[Addon]
    key: str


def live_items(orders: Iterable[Order]) -> Dict[str, LiveItem]:
    """Map identity -> live item for every item of every non-cancelled order, in order."""
    live: Dict[str, LiveItem] = {}
    for order in orders:
        if order.is_cancelled:
            continue
        for index, item in enumerate(order.items):
            identity = str(identity_for(order.id, item, index))
            live[identity] = LiveItem(
                identity=identity,
                order_id=str(order.id),
                index=index,
                name=item.name,
                price_cents=item.price_cents,
                quantity=item.quantity,
                addons=list(item.addons),
                key=item_key_for(item),
            )
    return live


def ledger_index(entries: Iterable[ItemPayment]) -> Dict[str, ItemPayment]:
    """First ledger entry per identity; duplicates are reported by the audit."""
    index: Dict[str, ItemPayment] = {}
    for entry in entries:
        index.setdefault(entry.item_id, entry)
    return index


def effective_paid(entry: Optional[ItemPayment], item: LiveItem) -> int:
    """Paid quantity of a live item, capped at its current quantity."""
    if entry is None:
        return 0
    return max(0, min(entry.paid_quantity, item.quantity))


def orphaned_entries(entries: Iterable[ItemPayment], live: Dict[str, LiveItem]) -> List[ItemPayment]:
    return [entry for entry in entries if entry.item_id not in live]


def live_items_fully_paid(entries: Iterable[ItemPayment], live: Dict[str, LiveItem]) -> bool:
    """True when every live item is covered by a fully paid ledger entry."""
    index = ledger_index(entries)
    return all(
        effective_paid(index.get(identity), item) == item.quantity
        for identity, item in live.items()
    )
