"""rxflow — SQLAlchemy models."""
from rxflow.models.commission import (
    Commission,
    CommissionPaymentStatus,
    Subscription,
    SubscriptionPayment,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)
from rxflow.models.notification import ErrorLog, NotificationDelivery, NotificationEndpoint
from rxflow.models.order import LineStatus, Order, OrderLine, OrderStatusHistory, PaymentStatus, ShippingSpeed, ShipTo
from rxflow.models.pharmacy import OrderRoutingLog, Pharmacy, PharmacyRepAssignment, Product, ProductPharmacy
from rxflow.models.refund import Refund, RefundStatus, RefundType
from rxflow.models.rep import Rep, RepTier
from rxflow.models.status_config import StatusConfig
from rxflow.models.user import Provider, User

__all__ = [
    "User", "Provider",
    "Rep", "RepTier",
    "Product", "Pharmacy", "ProductPharmacy", "PharmacyRepAssignment", "OrderRoutingLog",
    "StatusConfig",
    "Order", "OrderLine", "OrderStatusHistory", "PaymentStatus", "ShipTo", "ShippingSpeed", "LineStatus",
    "Refund", "RefundStatus", "RefundType",
    "Subscription", "SubscriptionPayment", "Commission",
    "SubscriptionStatus", "SubscriptionPaymentStatus", "CommissionPaymentStatus",
    "NotificationEndpoint", "NotificationDelivery", "ErrorLog",
]
