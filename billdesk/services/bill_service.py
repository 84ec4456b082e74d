"""
Bill orchestration: loads a bill and its live orders, runs a ledger command,
re-derives totals and status, and saves.

Every mutation of one bill runs inside that bill's asyncio lock and is saved
with an optimistic version check. On a version conflict (another process
saved first) the whole read-compute-write cycle is repeated against the fresh
document, so capacity checks always see the latest ledger.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from bson import ObjectId

from billdesk.core.config import settings
from billdesk.models.bill import Bill, BillStatus, SessionPayment
from billdesk.models.order import Order, OrderStatus
from billdesk.repositories.bill_repo import BillRepository
from billdesk.repositories.order_repo import OrderRepository
from billdesk.schemas.bill import AggregatedItem, BillCreate, LedgerAuditReport, PaymentResult
from billdesk.schemas.order import OrderCreate, OrderItemIn
from billdesk.services.aggregation import aggregate_bill_items
from billdesk.services.bill_status import status_for
from billdesk.services.ledger_audit import audit_item_payments, check_paid_consistency
from billdesk.services.payment_ledger import (
    apply_payment,
    apply_session_payment,
    enforce_entry_integrity,
    missing_entries,
    sync_entries,
)
from billdesk.services.reconciliation import live_items
from billdesk.utils.payment_validation import (
    BillNotFoundError,
    BillStateError,
    ConcurrentModificationError,
    OrderNotFoundError,
    PaymentValidationError,
)

logger = logging.getLogger(__name__)


class BillLocks:
    """One asyncio.Lock per bill id, alive while somebody holds it."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def for_bill(self, bill_id) -> asyncio.Lock:
        key = str(bill_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


bill_locks = BillLocks()


def _oid(value) -> Optional[ObjectId]:
    return ObjectId(str(value)) if value is not None else None


class BillService:
    def __init__(
        self,
        bills: BillRepository,
        orders: OrderRepository,
        locks: BillLocks = bill_locks,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.bills = bills
        self.orders = orders
        self.locks = locks
        self.max_retries = settings.BILL_SAVE_MAX_RETRIES if max_retries is None else max_retries
        self.clock = clock

    # ===== READS =====

    async def get_bill(self, bill_id: str) -> Bill:
        bill = await self.bills.get_bill(bill_id)
        if bill is None:
            raise BillNotFoundError(f"Bill {bill_id} not found")
        return bill

    async def list_bills(self, status: Optional[BillStatus] = None) -> List[Bill]:
        return await self.bills.list_bills(status)

    async def get_items(self, bill_id: str) -> List[AggregatedItem]:
        """Aggregated, payable rows of a bill. A cancelled bill has none."""
        bill = await self.get_bill(bill_id)
        if bill.status == BillStatus.CANCELLED:
            return []
        orders = await self.orders.get_orders(bill.orders)
        if missing_entries(bill, orders):
            bill, orders = await self._backfill(bill_id, bill, orders)
        return aggregate_bill_items(bill, orders)

    async def audit(self, bill_id: str) -> LedgerAuditReport:
        bill = await self.get_bill(bill_id)
        orders = await self.orders.get_orders(bill.orders)
        return audit_item_payments(bill, orders)

    # ===== BILL MUTATIONS =====

    async def create_bill(self, data: BillCreate, user_id: str) -> Bill:
        orders = await self.orders.get_orders(data.orders)
        if len(orders) != len(data.orders):
            raise OrderNotFoundError("One or more orders not found")
        for order in orders:
            if order.bill_id is not None:
                raise BillStateError(f"Order {order.order_number} is linked to another bill")

        bill = Bill(
            orders=[order.id for order in orders],
            tax_cents=data.tax_cents,
            discount_cents=data.discount_cents,
            due_date=data.due_date,
            notes=data.notes,
            created_by=ObjectId(user_id),
            updated_by=ObjectId(user_id),
        )
        self._finish(bill, orders, user_id)
        bill = await self.bills.create_bill(bill)

        for order in orders:
            await self.orders.link_bill(str(order.id), bill.id)
        logger.info("Created bill %s with %s order(s)", bill.bill_number, len(orders))
        return bill

    async def attach_order(self, bill_id: str, order_id: str, user_id: str) -> Bill:
        order = await self.orders.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")

        async def change(bill: Bill, orders: List[Order]):
            if bill.status in (BillStatus.PAID, BillStatus.CANCELLED):
                raise BillStateError(f"Cannot add orders to a {bill.status.value} bill")
            if order.id in bill.orders:
                raise BillStateError(f"Order {order.order_number} is already on this bill")
            if order.bill_id is not None and order.bill_id != bill.id:
                raise BillStateError(f"Order {order.order_number} is linked to another bill")
            bill.orders.append(order.id)

        bill, _ = await self._mutate(bill_id, change, user_id)
        await self.orders.link_bill(order_id, bill.id)
        return bill

    async def pay_items(self, bill_id: str, lines: List, method, user_id: str) -> PaymentResult:
        async def change(bill: Bill, orders: List[Order]):
            delta = apply_payment(bill, orders, lines, method, user_id, now=self.clock())
            bill.item_payments = delta.item_payments
            bill.paid_cents = delta.paid_cents
            bill.payment_history.append(delta.record)
            return delta

        bill, delta = await self._mutate(bill_id, change, user_id)
        return PaymentResult(
            paid_amount_cents=delta.amount_cents,
            remaining_amount_cents=bill.remaining_cents,
            status=bill.status,
            paid_items=[item.model_dump() for item in delta.paid_items],
        )

    async def attach_session(self, bill_id: str, session_id: str, session_cost_cents: int, user_id: str) -> Bill:
        """Add a session's cost to the bill, or update it if already present."""
        if not ObjectId.is_valid(session_id):
            raise PaymentValidationError(f"Invalid session id: {session_id}")

        async def change(bill: Bill, orders: List[Order]):
            if bill.status in (BillStatus.PAID, BillStatus.CANCELLED):
                raise BillStateError(f"Cannot add sessions to a {bill.status.value} bill")
            existing = next((s for s in bill.session_payments if str(s.session_id) == session_id), None)
            if existing is None:
                bill.session_payments.append(SessionPayment(
                    session_id=ObjectId(session_id),
                    session_cost_cents=session_cost_cents,
                    remaining_cents=session_cost_cents,
                ))
            else:
                existing.session_cost_cents = session_cost_cents
                existing.remaining_cents = max(0, session_cost_cents - existing.paid_cents)

        bill, _ = await self._mutate(bill_id, change, user_id)
        return bill

    async def pay_session(self, bill_id: str, session_id: str, amount_cents: int, method, user_id: str) -> PaymentResult:
        async def change(bill: Bill, orders: List[Order]):
            delta = apply_session_payment(bill, session_id, amount_cents, method, user_id, now=self.clock())
            bill.session_payments = delta.session_payments
            bill.paid_cents = delta.paid_cents
            bill.payment_history.append(delta.record)
            return delta

        bill, delta = await self._mutate(bill_id, change, user_id)
        return PaymentResult(
            paid_amount_cents=delta.record.amount_cents,
            remaining_amount_cents=bill.remaining_cents,
            status=bill.status,
        )

    async def cancel_bill(self, bill_id: str, user_id: str) -> Bill:
        async def change(bill: Bill, orders: List[Order]):
            if bill.status == BillStatus.CANCELLED:
                raise BillStateError("Bill is already cancelled")
            if bill.paid_cents > 0:
                logger.warning("Cancelling bill %s with %s cents already paid", bill.bill_number, bill.paid_cents)
            bill.status = BillStatus.CANCELLED
            bill.subtotal_cents = 0
            bill.total_cents = 0

        bill, _ = await self._mutate(bill_id, change, user_id)
        await self.orders.unlink_bill(bill.id)
        return bill

    # ===== ORDER MUTATIONS =====

    async def create_order(self, data: OrderCreate, user_id: str) -> Order:
        return await self.orders.create_order(data, user_id)

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def update_order_items(self, order_id: str, items: List[OrderItemIn], user_id: str) -> Order:
        order = await self.orders.replace_items(order_id, items)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        await self._refresh_for_order(order, user_id)
        return order

    async def cancel_order(self, order_id: str, user_id: str) -> Order:
        order = await self.orders.set_status(order_id, OrderStatus.CANCELLED)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        await self._refresh_for_order(order, user_id)
        return order

    async def _refresh_for_order(self, order: Order, user_id: str) -> None:
        """Re-derive totals and status of the bill an edited order belongs to."""
        if order.bill_id is None:
            return
        bill = await self.bills.get_bill(str(order.bill_id))
        if bill is None or bill.status == BillStatus.CANCELLED:
            return

        async def change(bill: Bill, orders: List[Order]):
            return None

        await self._mutate(str(bill.id), change, user_id)

    # ===== INTERNALS =====

    def _finish(self, bill: Bill, orders: List[Order], user_id: Optional[str] = None) -> None:
        """Materialize, clamp, total and derive status. The only place status is set."""
        live = live_items(orders)

        if bill.status != BillStatus.CANCELLED:
            bill.item_payments.extend(missing_entries(bill, orders))
            sync_entries(bill.item_payments, live)
            items_total = sum(item.price_cents * item.quantity for item in live.values())
            sessions_total = sum(s.session_cost_cents for s in bill.session_payments)
            bill.subtotal_cents = items_total + sessions_total
            bill.total_cents = max(0, bill.subtotal_cents + bill.tax_cents - bill.discount_cents)

        enforce_entry_integrity(bill.item_payments)
        bill.paid_cents = check_paid_consistency(bill)
        bill.remaining_cents = max(0, bill.total_cents - bill.paid_cents)
        bill.status = status_for(bill, live, now=self.clock())
        if user_id is not None:
            bill.updated_by = _oid(user_id)

    async def _mutate(
        self,
        bill_id: str,
        change: Callable[[Bill, List[Order]], Awaitable],
        user_id: Optional[str] = None,
    ) -> Tuple[Bill, object]:
        async with self.locks.for_bill(bill_id):
            for attempt in range(self.max_retries + 1):
                bill = await self.get_bill(bill_id)
                orders = await self.orders.get_orders(bill.orders)
                known = list(bill.orders)

                result = await change(bill, orders)
                if bill.orders != known:
                    orders = await self.orders.get_orders(bill.orders)
                self._finish(bill, orders, user_id)

                try:
                    saved = await self.bills.save_bill(bill)
                except ConcurrentModificationError:
                    logger.warning(
                        "Version conflict saving bill %s (attempt %s)", bill.bill_number, attempt + 1
                    )
                    continue
                return saved, result

        raise ConcurrentModificationError(
            f"Bill {bill_id} kept changing; gave up after {self.max_retries + 1} attempts"
        )

    async def _backfill(self, bill_id: str, bill: Bill, orders: List[Order]) -> Tuple[Bill, List[Order]]:
        """Persist ledger entries for items the ledger lacks; a lost race is harmless."""
        async with self.locks.for_bill(bill_id):
            self._finish(bill, orders)
            try:
                bill = await self.bills.save_bill(bill)
                logger.info("Backfilled item payments for bill %s", bill.bill_number)
            except ConcurrentModificationError:
                logger.info("Skipped item payment backfill for bill %s: concurrent update", bill.bill_number)
        return bill, orders
