from fastapi import APIRouter
from billdesk.api.v1.endpoints import bills, orders

api_router = APIRouter()

api_router.include_router(bills.router, prefix="/bills", tags=["bills"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
