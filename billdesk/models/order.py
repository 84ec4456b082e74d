from typing import Optional, List
from enum import Enum
from pydantic import BaseModel, Field
from billdesk.models.base import MongoModel, PyObjectId


class OrderStatus(str, Enum):
    PENDING = "pending"
    SERVED = "served"
    CANCELLED = "cancelled"


class Addon(BaseModel):
    name: str
    price_cents: int = 0


# Embedded documents don't need MongoModel (no separate _id)
class OrderItem(BaseModel):
    # Legacy items have no durable id and are identified by position
    item_id: Optional[PyObjectId] = None
    name: str
    price_cents: int  # Unit price, addons included
    quantity: int = Field(ge=1)
    addons: List[Addon] = []
    notes: Optional[str] = None


class Order(MongoModel):
    order_number: str
    status: OrderStatus = OrderStatus.PENDING
    bill_id: Optional[PyObjectId] = None
    items: List[OrderItem] = []
    created_by: Optional[PyObjectId] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED
