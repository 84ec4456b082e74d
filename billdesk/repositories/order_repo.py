from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from bson import ObjectId
from datetime import datetime, timezone
from typing import Optional, List, Iterable

from billdesk.models.order import Order, OrderItem, OrderStatus
from billdesk.schemas.order import OrderCreate, OrderItemIn


def _order_number(now: datetime) -> str:
    return f"ORD-{now.strftime('%y%m%d%H%M%S')}{now.microsecond // 1000:03d}"


def _same_product(existing: OrderItem, incoming: OrderItemIn) -> bool:
    return (
        existing.name == incoming.name
        and existing.price_cents == incoming.price_cents
        and sorted((a.name, a.price_cents) for a in existing.addons)
        == sorted((a.name, a.price_cents) for a in incoming.addons)
    )


def build_items(incoming: Iterable[OrderItemIn], existing: Iterable[OrderItem] = ()) -> List[OrderItem]:
    """
    Turn submitted items into stored items with durable ids.

    An item keeps its id only when it names an existing item and is still the
    same product (name, price and addons); quantity edits keep the id,
    anything else is a new item.
    """
    by_id = {str(item.item_id): item for item in existing if item.item_id is not None}
    items = []
    for item_in in incoming:
        current = by_id.pop(item_in.item_id, None) if item_in.item_id else None
        item_id = current.item_id if current is not None and _same_product(current, item_in) else ObjectId()
        items.append(OrderItem(
            item_id=item_id,
            name=item_in.name,
            price_cents=item_in.price_cents,
            quantity=item_in.quantity,
            addons=item_in.addons,
            notes=item_in.notes,
        ))
    return items


class OrderRepository:
    """Order database operations."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["orders"]

    async def create_order(self, order_data: OrderCreate, user_id: Optional[str] = None) -> Order:
        """Create an order; every item gets a durable item_id."""
        now = datetime.now(timezone.utc)
        order = Order(
            order_number=order_data.order_number or _order_number(now),
            items=build_items(order_data.items),
            created_by=ObjectId(user_id) if user_id else None,
            created_at=now,
            updated_at=now,
        )
        result = await self.collection.insert_one(order.model_dump(by_alias=True, mode="python"))
        order.id = result.inserted_id
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        if not ObjectId.is_valid(str(order_id)):
            return None
        doc = await self.collection.find_one({"_id": ObjectId(str(order_id))})
        if doc:
            return Order(**doc)
        return None

    async def get_orders(self, order_ids: Iterable) -> List[Order]:
        """Fetch orders, keeping the order of order_ids and skipping missing ones."""
        ids = [ObjectId(str(oid)) for oid in order_ids]
        if not ids:
            return []
        docs = await self.collection.find({"_id": {"$in": ids}}).to_list(None)
        by_id = {doc["_id"]: Order(**doc) for doc in docs}
        return [by_id[oid] for oid in ids if oid in by_id]

    async def replace_items(self, order_id: str, items: List[OrderItemIn]) -> Optional[Order]:
        """Replace an order's items, preserving ids of unchanged products."""
        order = await self.get_order(order_id)
        if order is None:
            return None

        new_items = build_items(items, order.items)
        result = await self.collection.find_one_and_update(
            {"_id": order.id},
            {
                "$set": {
                    "items": [item.model_dump(mode="python") for item in new_items],
                    "updated_at": datetime.now(timezone.utc)
                }
            },
            return_document=ReturnDocument.AFTER
        )
        if result:
            return Order(**result)
        return None

    async def set_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        if not ObjectId.is_valid(str(order_id)):
            return None
        result = await self.collection.find_one_and_update(
            {"_id": ObjectId(str(order_id))},
            {"$set": {"status": status.value, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER
        )
        if result:
            return Order(**result)
        return None

    async def link_bill(self, order_id: str, bill_id) -> bool:
        """Link an order to a bill unless it is already linked to one."""
        result = await self.collection.update_one(
            {"_id": ObjectId(str(order_id)), "bill_id": None},
            {"$set": {"bill_id": ObjectId(str(bill_id)), "updated_at": datetime.now(timezone.utc)}}
        )
        return result.modified_count > 0

    async def unlink_bill(self, bill_id) -> int:
        result = await self.collection.update_many(
            {"bill_id": ObjectId(str(bill_id))},
            {"$set": {"bill_id": None, "updated_at": datetime.now(timezone.utc)}}
        )
        return result.modified_count
