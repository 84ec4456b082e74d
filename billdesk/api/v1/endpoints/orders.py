from fastapi import APIRouter, Depends, status

from billdesk.api.deps import get_bill_service, http_error
from billdesk.core.auth import CurrentUser, get_current_user
from billdesk.models.order import Order
from billdesk.schemas.order import OrderCreate, OrderItemResponse, OrderItemsUpdate, OrderResponse
from billdesk.services.bill_service import BillService
from billdesk.utils.payment_validation import BillingError

router = APIRouter()


def _to_order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=str(order.id),
        order_number=order.order_number,
        status=order.status,
        bill_id=str(order.bill_id) if order.bill_id else None,
        items=[
            OrderItemResponse(
                item_id=str(item.item_id) if item.item_id else None,
                name=item.name,
                price_cents=item.price_cents,
                quantity=item.quantity,
                addons=item.addons,
                notes=item.notes,
            )
            for item in order.items
        ],
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_in: OrderCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    order = await service.create_order(order_in, current_user.id)
    return _to_order_response(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    try:
        order = await service.get_order(order_id)
    except BillingError as e:
        raise http_error(e)
    return _to_order_response(order)


@router.put("/{order_id}/items", response_model=OrderResponse)
async def update_order_items(
    order_id: str,
    request: OrderItemsUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    """Replace the order's items; send item_id back for items being kept."""
    try:
        order = await service.update_order_items(order_id, request.items, current_user.id)
    except BillingError as e:
        raise http_error(e)
    return _to_order_response(order)


@router.put("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: BillService = Depends(get_bill_service),
):
    try:
        order = await service.cancel_order(order_id, current_user.id)
    except BillingError as e:
        raise http_error(e)
    return _to_order_response(order)
