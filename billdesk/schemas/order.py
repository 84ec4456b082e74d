from typing import Optional, List
from pydantic import BaseModel, Field
from datetime import datetime
from billdesk.models.order import Addon, OrderStatus


class OrderItemIn(BaseModel):
    # Present when editing an existing item; omitted for new items
    item_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    price_cents: int = Field(ge=0)
    quantity: int = Field(ge=1)
    addons: List[Addon] = []
    notes: Optional[str] = None


class OrderCreate(BaseModel):
    order_number: Optional[str] = None
    items: List[OrderItemIn] = Field(..., min_length=1)


class OrderItemsUpdate(BaseModel):
    items: List[OrderItemIn]


class OrderItemResponse(BaseModel):
    item_id: Optional[str] = None
    name: str
    price_cents: int
    quantity: int
    addons: List[Addon] = []
    notes: Optional[str] = None


class OrderResponse(BaseModel):
    id: str
    order_number: str
    status: OrderStatus
    bill_id: Optional[str] = None
    items: List[OrderItemResponse]
    created_at: datetime
    updated_at: datetime
