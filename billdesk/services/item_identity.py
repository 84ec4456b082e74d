"""
Item identity and grouping keys.

Two notions of "same item":
- grouping key: visually identical items (name + price + addon set), merged
  into one display row
- item identity: one concrete line of one order, the unit of payment tracking
"""

from typing import Iterable, NamedTuple, Optional

from billdesk.models.order import Addon, OrderItem


class ItemIdentity(NamedTuple):
    order_id: str
    item_key: str  # durable item_id, or position for legacy items

    def __str__(self) -> str:
        return f"{self.order_id}-{self.item_key}"

    @classmethod
    def parse(cls, value: str) -> Optional["ItemIdentity"]:
        order_id, sep, item_key = (value or "").partition("-")
        if not sep or not order_id or not item_key:
            return None
        return cls(order_id, item_key)


def normalize_name(name: str) -> str:
    return " ".join((name or "").split()).casefold()


def grouping_key(name: str, price_cents: int, addons: Iterable[Addon] = ()) -> str:
    """Order-independent key for merging identical items into one row."""
    addons_key = "|".join(sorted(
        f"{normalize_name(addon.name)}:{addon.price_cents}" for addon in addons
    ))
    return f"{normalize_name(name)}|{price_cents}|{addons_key}"


def item_key_for(item: OrderItem) -> str:
    return grouping_key(item.name, item.price_cents, item.addons)


def identity_for(order_id, item: OrderItem, index: int) -> ItemIdentity:
    item_key = str(item.item_id) if item.item_id is not None else str(index)
    return ItemIdentity(str(order_id), item_key)
