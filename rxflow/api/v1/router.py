"""rxflow — API v1 router aggregation."""
from fastapi import APIRouter

from rxflow.api.v1.endpoints import (
    commissions,
    csrf,
    order_lines,
    orders,
    routing,
    status_configs,
)

api_router = APIRouter()

api_router.include_router(csrf.router, prefix="/csrf-token", tags=["csrf"])
api_router.include_router(routing.router, prefix="/routing", tags=["routing"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(order_lines.router, prefix="/order-lines", tags=["order-lines"])
api_router.include_router(status_configs.router, prefix="/status-configs", tags=["status-configs"])
api_router.include_router(commissions.payments_router, prefix="/subscription-payments", tags=["subscriptions"])
api_router.include_router(commissions.router, prefix="/commissions", tags=["commissions"])
