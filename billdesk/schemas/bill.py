from typing import Optional, List
from pydantic import BaseModel, Field, StrictInt
from datetime import datetime
from billdesk.models.bill import BillStatus, PaymentMethod, PaymentTracking
from billdesk.models.order import Addon


class AggregatedItem(BaseModel):
    """One display row: identical items of all the bill's orders merged."""
    id: str  # identity of the first constituent item
    name: str
    price_cents: int
    total_quantity: int
    paid_quantity: int
    remaining_quantity: int
    addons: List[Addon] = []
    has_addons: bool = False
    order_id: str


class PaymentItemIn(BaseModel):
    item_id: str
    quantity: StrictInt  # 2.0 or "2" is rejected, not coerced


class PayItemsRequest(BaseModel):
    items: List[PaymentItemIn]
    method: PaymentMethod = PaymentMethod.CASH


class PaySessionRequest(BaseModel):
    session_id: str
    amount_cents: StrictInt
    method: PaymentMethod = PaymentMethod.CASH


class SessionAttach(BaseModel):
    session_id: str
    session_cost_cents: int = Field(ge=0)


class AttachOrderRequest(BaseModel):
    order_id: str


class BillCreate(BaseModel):
    orders: List[str] = []
    tax_cents: int = Field(default=0, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class PaidItemResponse(BaseModel):
    item_name: str
    quantity: int
    amount_cents: int


class PaymentResult(BaseModel):
    paid_amount_cents: int
    remaining_amount_cents: int
    status: BillStatus
    paid_items: List[PaidItemResponse] = []


class ItemPaymentRecordResponse(BaseModel):
    quantity: int
    amount_cents: int
    paid_at: datetime
    paid_by: str
    method: PaymentMethod


class ItemPaymentResponse(BaseModel):
    order_id: str
    item_id: str
    item_name: str
    quantity: int
    paid_quantity: int
    price_per_unit_cents: int
    total_price_cents: int
    paid_amount_cents: int
    is_paid: bool
    addons: List[Addon] = []
    tracking: PaymentTracking
    payment_history: List[ItemPaymentRecordResponse] = []


class SessionPaymentResponse(BaseModel):
    session_id: str
    session_cost_cents: int
    paid_cents: int
    remaining_cents: int


class BillResponse(BaseModel):
    id: str
    bill_number: str
    status: BillStatus
    orders: List[str]
    item_payments: List[ItemPaymentResponse]
    session_payments: List[SessionPaymentResponse]
    subtotal_cents: int
    tax_cents: int
    discount_cents: int
    total_cents: int
    paid_cents: int
    remaining_cents: int
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime


class OrphanedPayment(BaseModel):
    item_id: str
    item_name: str
    paid_quantity: int
    paid_amount_cents: int


class RedistributionCandidate(BaseModel):
    item_id: str
    item_name: str
    available_quantity: int
    can_receive_cents: int


class RedistributionSuggestion(BaseModel):
    orphaned_payment: OrphanedPayment
    candidates: List[RedistributionCandidate] = []
    recommendation: Optional[str] = None


class LedgerAuditReport(BaseModel):
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []
    orphaned_payments: List[OrphanedPayment] = []
    duplicates: List[str] = []
    negative_payments: List[str] = []
    overpayments: List[str] = []
    ledger_paid_cents: int = 0
    stored_paid_cents: int = 0
    suggestions: List[RedistributionSuggestion] = []
