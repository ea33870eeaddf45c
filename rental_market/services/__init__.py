from .audit_service import AuditService
from .checkout_gateway import (
    CheckoutGateway,
    CheckoutSession,
    HttpCheckoutGateway,
    SimulatedCheckoutGateway,
    build_gateway,
)
from .delivery_service import DeliveryService
from .email_service import EmailService
from .inventory_service import InventoryService
from .order_service import OrderService
from .payment_link_service import PaymentLinkService
from .quotation_service import QuotationService

__all__ = [
    "AuditService",
    "CheckoutGateway",
    "CheckoutSession",
    "HttpCheckoutGateway",
    "SimulatedCheckoutGateway",
    "build_gateway",
    "DeliveryService",
    "EmailService",
    "InventoryService",
    "OrderService",
    "PaymentLinkService",
    "QuotationService",
]
