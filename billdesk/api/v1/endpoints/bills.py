from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from billdesk.api.deps import get_bill_service, http_error
from billdesk.core.auth import CurrentUser, get_current_user
from billdesk.models.bill import Bill, BillStatus
from billdesk.schemas.bill import (
    AggregatedItem,
    AttachOrderRequest,
    BillCreate,
    BillResponse,
    ItemPaymentRecordResponse,
    ItemPaymentResponse,
    LedgerAuditReport,
    PayItemsRequest,
    PaymentResult,
    PaySessionRequest,
    SessionAttach,
    SessionPaymentResponse,
)
from billdesk.services.bill_service import BillService
from billdesk.utils.payment_validation import BillingError

router = APIRouter()


def _to_bill_response(bill: Bill) -> BillResponse:
    return BillResponse(
        id=str(bill.id),
        bill_number=bill.bill_number,
        status=bill.status,
        orders=[str(order_id) for order_id in bill.orders],
        item_payments=[
            ItemPaymentResponse(
                order_id=str(entry.order_id),
                item_id=entry.item_id,
                item_name=entry.item_name,
                quantity=entry.quantity,
                paid_quantity=entry.paid_quantity,
                price_per_unit_cents=entry.price_per_unit_cents,
                total_price_cents=entry.total_price_cents,
                paid_amount_cents=entry.paid_amount_cents,
                is_paid=entry.is_paid,
                addons=entry.addons,
                tracking=entry.tracking,
                payment_history=[
                    ItemPaymentRecordResponse(
                        quantity=record.quantity,
                        amount_cents=record.amount_cents,
                        paid_at=record.paid_at,
                        paid_by=str(record.paid_by),
                        method=record.method,
                    )
                    for record in entry.payment_history
                ],
            )
            for entry in bill.item_payments
        ],
        session_payments=[
            SessionPaymentResponse(
                session_id=str(session.session_id),
                session_cost_cents=session.session_cost_cents,
                paid_cents=session.paid_cents,
                remaining_cents=session.remaining_cents,
            )
            for session in bill.session_payments
        ],
        subtotal_cents=bill.subtotal_cents,
        tax_cents=bill.tax_cents,
        discount_cents=bill.discount_cents,
        total_cents=bill.total_cents,
        paid_cents=bill.paid_cents,
        remaining_cents=bill.remaining_cents,
        due_date=bill.due_date,
        notes=bill.notes,
        version=bill.version,
        created_at=bill.created_at,
        updated_at=bill.updated_at,
    )


@router.post("", response_model=BillResponse, status_code=status.HTTP_201_CREATED)
async def create_bill(
    bill_in: BillCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    """Create a bill, optionally with orders attached."""
    try:
        bill = await service.create_bill(bill_in, current_user.id)
    except BillingError as e:
        raise http_error(e)
    return _to_bill_response(bill)


@router.get("", response_model=List[BillResponse])
async def list_bills(
    status_filter: Optional[BillStatus] = Query(None, alias="status"),
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    bills = await service.list_bills(status_filter)
    return [_to_bill_response(bill) for bill in bills]


@router.get("/{bill_id}", response_model=BillResponse)
async def get_bill(
    bill_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    try:
        bill = await service.get_bill(bill_id)
    except BillingError as e:
        raise http_error(e)
    return _to_bill_response(bill)


@router.get("/{bill_id}/items", response_model=List[AggregatedItem])
async def get_bill_items(
    bill_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    """Identical items across the bill's orders, merged into payable rows."""
    try:
        return await service.get_items(bill_id)
    except BillingError as e:
        raise http_error(e)


@router.post("/{bill_id}/orders", response_model=BillResponse)
async def attach_order(
    bill_id: str,
    request: AttachOrderRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    try:
        bill = await service.attach_order(bill_id, request.order_id, current_user.id)
    except BillingError as e:
        raise http_error(e)
    return _to_bill_response(bill)


@router.post("/{bill_id}/pay-items", response_model=PaymentResult)
async def pay_items(
    bill_id: str,
    request: PayItemsRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    """
    Pay for quantities of aggregated rows.

    Each item_id is a row id from GET /bills/{id}/items. The whole request is
    rejected if any line cannot be paid in full.
    """
    try:
        return await service.pay_items(bill_id, request.items, request.method, current_user.id)
    except BillingError as e:
        raise http_error(e)


@router.post("/{bill_id}/sessions", response_model=BillResponse)
async def attach_session(
    bill_id: str,
    request: SessionAttach,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    try:
        bill = await service.attach_session(
            bill_id, request.session_id, request.session_cost_cents, current_user.id
        )
    except BillingError as e:
        raise http_error(e)
    return _to_bill_response(bill)


@router.post("/{bill_id}/pay-session", response_model=PaymentResult)
async def pay_session(
    bill_id: str,
    request: PaySessionRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    try:
        return await service.pay_session(
            bill_id, request.session_id, request.amount_cents, request.method, current_user.id
        )
    except BillingError as e:
        raise http_error(e)


@router.put("/{bill_id}/cancel", response_model=BillResponse)
async def cancel_bill(
    bill_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    try:
        bill = await service.cancel_bill(bill_id, current_user.id)
    except BillingError as e:
        raise http_error(e)
    return _to_bill_response(bill)


@router.get("/{bill_id}/audit", response_model=LedgerAuditReport)
async def audit_bill(
    bill_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    """Consistency report for the bill's item payments. Read only."""
    try:
        return await service.audit(bill_id)
    except BillingError as e:
        raise http_error(e)
