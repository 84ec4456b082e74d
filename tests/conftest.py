import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock
from bson import ObjectId
from fastapi.testclient import TestClient

from billdesk.api.deps import get_bill_service
from billdesk.core.auth import CurrentUser, get_current_user
from billdesk.main import app
from billdesk.models.bill import Bill, BillStatus
from billdesk.models.order import Addon, Order, OrderItem, OrderStatus
from billdesk.repositories.order_repo import build_items
from billdesk.schemas.order import OrderCreate, OrderItemIn
from billdesk.services.bill_service import BillLocks, BillService
from billdesk.utils.payment_validation import ConcurrentModificationError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
STAFF_ID = "507f1f77bcf86cd799439011"


class InMemoryBillRepository:
    """Stores copies of bills and enforces the version check like Mongo does."""

    def __init__(self):
        self.bills: Dict[ObjectId, Bill] = {}
        self.saves = 0

    async def create_bill(self, bill: Bill) -> Bill:
        self.bills[bill.id] = bill.model_copy(deep=True)
        return bill

    async def get_bill(self, bill_id) -> Optional[Bill]:
        await asyncio.sleep(0)
        if not ObjectId.is_valid(str(bill_id)):
            return None
        bill = self.bills.get(ObjectId(str(bill_id)))
        return bill.model_copy(deep=True) if bill else None

    async def list_bills(self, status: Optional[BillStatus] = None) -> List[Bill]:
        return [
            bill.model_copy(deep=True)
            for bill in self.bills.values()
            if status is None or bill.status == status
        ]

    async def save_bill(self, bill: Bill) -> Bill:
        await asyncio.sleep(0)
        stored = self.bills.get(bill.id)
        if stored is None or stored.version != bill.version:
            raise ConcurrentModificationError(f"Bill {bill.id} was modified concurrently")
        saved = bill.model_copy(deep=True)
        saved.version += 1
        self.bills[bill.id] = saved
        self.saves += 1
        return saved.model_copy(deep=True)


class InMemoryOrderRepository:
    def __init__(self):
        self.orders: Dict[ObjectId, Order] = {}

    def add(self, order: Order) -> Order:
        self.orders[order.id] = order.model_copy(deep=True)
        return order

    async def create_order(self, order_data: OrderCreate, user_id: Optional[str] = None) -> Order:
        order = Order(
            order_number=order_data.order_number or f"ORD-{len(self.orders) + 1}",
            items=build_items(order_data.items),
        )
        return self.add(order)

    async def get_order(self, order_id) -> Optional[Order]:
        if not ObjectId.is_valid(str(order_id)):
            return None
        order = self.orders.get(ObjectId(str(order_id)))
        return order.model_copy(deep=True) if order else None

    async def get_orders(self, order_ids) -> List[Order]:
        await asyncio.sleep(0)
        ids = [ObjectId(str(oid)) for oid in order_ids]
        return [self.orders[oid].model_copy(deep=True) for oid in ids if oid in self.orders]

    async def replace_items(self, order_id, items: List[OrderItemIn]) -> Optional[Order]:
        order = self.orders.get(ObjectId(str(order_id)))
        if order is None:
            return None
        order.items = build_items(items, order.items)
        return order.model_copy(deep=True)

    async def set_status(self, order_id, status: OrderStatus) -> Optional[Order]:
        order = self.orders.get(ObjectId(str(order_id)))
        if order is None:
            return None
        order.status = status
        return order.model_copy(deep=True)

    async def link_bill(self, order_id, bill_id) -> bool:
        order = self.orders[ObjectId(str(order_id))]
        if order.bill_id is not None:
            return False
        order.bill_id = ObjectId(str(bill_id))
        return True

    async def unlink_bill(self, bill_id) -> int:
        count = 0
        for order in self.orders.values():
            if order.bill_id == ObjectId(str(bill_id)):
                order.bill_id = None
                count += 1
        return count


def make_item(name: str, price_cents: int, quantity: int, addons=(), legacy: bool = False) -> OrderItem:
    return OrderItem(
        item_id=None if legacy else ObjectId(),
        name=name,
        price_cents=price_cents,
        quantity=quantity,
        addons=[Addon(name=a, price_cents=p) for a, p in addons],
    )


def make_order(*items: OrderItem, status: OrderStatus = OrderStatus.PENDING) -> Order:
    return Order(order_number=f"ORD-{ObjectId()}", status=status, items=list(items))


def make_bill(*orders: Order, **fields) -> Bill:
    fields.setdefault("created_by", ObjectId(STAFF_ID))
    return Bill(orders=[order.id for order in orders], **fields)


@pytest.fixture
def bill_repo():
    return InMemoryBillRepository()


@pytest.fixture
def order_repo():
    return InMemoryOrderRepository()


@pytest.fixture
def service(bill_repo, order_repo):
    return BillService(bill_repo, order_repo, locks=BillLocks(), max_retries=3, clock=lambda: NOW)


@pytest.fixture
def mock_db():
    """Motor database whose collections are AsyncMocks."""
    db = MagicMock()
    collections: Dict[str, MagicMock] = {}

    def collection(name):
        if name not in collections:
            coll = MagicMock()
            coll.insert_one = AsyncMock()
            coll.find_one = AsyncMock(return_value=None)
            coll.find_one_and_update = AsyncMock(return_value=None)
            coll.update_one = AsyncMock()
            coll.update_many = AsyncMock()
            collections[name] = coll
        return collections[name]

    db.__getitem__.side_effect = collection
    return db


@pytest.fixture
def client(service):
    """Test client with auth stubbed and the service backed by memory."""
    app.dependency_overrides[get_current_user] = lambda: CurrentUser(id=STAFF_ID)
    app.dependency_overrides[get_bill_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
