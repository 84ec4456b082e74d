from fastapi import Depends, HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase

from billdesk.db.mongo import get_db
from billdesk.repositories.bill_repo import BillRepository
from billdesk.repositories.order_repo import OrderRepository
from billdesk.services.bill_service import BillService
from billdesk.utils.payment_validation import (
    BillingError,
    BillNotFoundError,
    ConcurrentModificationError,
    OrderNotFoundError,
    OverpaymentError,
    StaleReferenceError,
)


def get_bill_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> BillService:
    """Bill service over the app's Mongo database."""
    return BillService(BillRepository(db), OrderRepository(db))


def http_error(exc: BillingError) -> HTTPException:
    """Map a billing error to the HTTP error returned to the client."""
    if isinstance(exc, (BillNotFoundError, OrderNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (OverpaymentError, ConcurrentModificationError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, StaleReferenceError):
        code = status.HTTP_410_GONE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))
