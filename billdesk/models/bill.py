"""
Bill model - tables' running tabs and their per-item payment ledger.

Design principles:
- One ItemPayment entry per concrete order item (see services.item_identity)
- Entries are updated in place by payments, never replaced or deleted
- Entries whose order item disappeared are orphaned and ignored at read time
- paid_cents always equals the ledger sum (items + sessions)
- All amounts in integer cents
"""

from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, model_validator
from billdesk.models.base import MongoModel, PyObjectId, _utcnow
from billdesk.models.order import Addon


class BillStatus(str, Enum):
    DRAFT = "draft"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"


class PaymentTracking(str, Enum):
    """How an entry's paid quantity was established when it was loaded."""
    QUANTITY = "quantity"
    AMOUNT = "amount"  # legacy: inferred from paid amount / unit price
    FLAG = "flag"      # legacy: inferred from the is_paid boolean


class ItemPaymentRecord(BaseModel):
    quantity: int
    amount_cents: int
    paid_at: datetime = Field(default_factory=_utcnow)
    paid_by: PyObjectId
    method: PaymentMethod


class ItemPayment(BaseModel):
    """
    Ledger entry for one concrete order item.

    Invariants (enforced by services.payment_ledger.enforce_entry_integrity):
    - 0 <= paid_quantity <= quantity
    - paid_amount_cents == paid_quantity * price_per_unit_cents
    - is_paid == (paid_quantity == quantity)
    """
    order_id: PyObjectId
    item_id: str
    item_name: str
    quantity: int
    paid_quantity: int = 0
    price_per_unit_cents: int
    total_price_cents: int = 0
    paid_amount_cents: int = 0
    is_paid: bool = False
    addons: List[Addon] = []
    paid_at: Optional[datetime] = None
    paid_by: Optional[PyObjectId] = None
    payment_history: List[ItemPaymentRecord] = []
    tracking: PaymentTracking = PaymentTracking.QUANTITY

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy_shape(cls, data):
        # Older documents carry no paid_quantity; resolve it once here so the
        # ledger algorithms only ever read paid_quantity.
        if not isinstance(data, dict) or data.get("paid_quantity") is not None:
            return data

        data = dict(data)
        price = data.get("price_per_unit_cents") or 0
        paid_amount = data.get("paid_amount_cents") or 0
        if paid_amount > 0 and price > 0:
            # Half-up, so 2.5 units paid reads as 3
            data["paid_quantity"] = (2 * paid_amount + price) // (2 * price)
            data["tracking"] = PaymentTracking.AMOUNT
        elif data.get("is_paid"):
            data["paid_quantity"] = data.get("quantity") or 0
            data["tracking"] = PaymentTracking.FLAG
        else:
            data["paid_quantity"] = 0
            data["tracking"] = PaymentTracking.QUANTITY
        return data

    def remaining_quantity(self) -> int:
        return max(0, self.quantity - self.paid_quantity)


class SessionPaymentRecord(BaseModel):
    amount_cents: int
    paid_at: datetime = Field(default_factory=_utcnow)
    paid_by: PyObjectId
    method: PaymentMethod


class SessionPayment(BaseModel):
    """Installments against the cost of one gaming-device session."""
    session_id: PyObjectId
    session_cost_cents: int
    paid_cents: int = 0
    remaining_cents: int = 0
    payments: List[SessionPaymentRecord] = []

    def is_settled(self) -> bool:
        return self.remaining_cents <= 0


class PaidItemDetail(BaseModel):
    item_name: str
    quantity: int
    amount_cents: int


class PaidSessionDetail(BaseModel):
    session_id: PyObjectId
    amount_cents: int
    remaining_after_cents: int


class PaymentDetails(BaseModel):
    paid_items: List[PaidItemDetail] = []
    paid_sessions: List[PaidSessionDetail] = []


class BillPaymentRecord(BaseModel):
    amount_cents: int
    method: PaymentMethod
    paid_by: PyObjectId
    type: str  # "partial-items" | "partial-session"
    timestamp: datetime = Field(default_factory=_utcnow)
    details: PaymentDetails = Field(default_factory=PaymentDetails)


def generate_bill_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"BILL-{now.strftime('%y%m%d%H%M%S')}{now.microsecond // 1000:03d}"


class Bill(MongoModel):
    bill_number: str = Field(default_factory=generate_bill_number)
    status: BillStatus = BillStatus.DRAFT

    orders: List[PyObjectId] = []
    item_payments: List[ItemPayment] = []
    session_payments: List[SessionPayment] = []
    payment_history: List[BillPaymentRecord] = []

    # All monetary values in integer cents
    subtotal_cents: int = 0
    tax_cents: int = 0
    discount_cents: int = 0
    total_cents: int = 0
    paid_cents: int = 0
    remaining_cents: int = 0

    due_date: Optional[datetime] = None
    notes: Optional[str] = None

    version: int = 1

    created_by: PyObjectId
    updated_by: Optional[PyObjectId] = None

    def ledger_paid_cents(self) -> int:
        """Paid amount implied by the ledger (items + sessions)."""
        items = sum(entry.paid_amount_cents for entry in self.item_payments)
        sessions = sum(session.paid_cents for session in self.session_payments)
        return items + sessions
