from __future__ import annotations

from typing import Any, Dict, Optional

from flask import current_app, g, request

from rental_market.auth import CurrentUser
from rental_market.database import get_db
from rental_market.errors import ValidationError
from rental_market.services import (
    AuditService,
    DeliveryService,
    InventoryService,
    OrderService,
    PaymentLinkService,
    QuotationService,
)


def current_actor() -> Optional[CurrentUser]:
    user = getattr(g, "current_user", None)
    return CurrentUser.from_user(user) if user is not None else None


def json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def require_fields(payload: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if payload.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def int_arg(payload: Dict[str, Any], name: str) -> int:
    try:
        return int(payload[name])
    except (KeyError, TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


def quotation_service() -> QuotationService:
    db = get_db()
    audit = AuditService(db)
    return QuotationService(
        db,
        inventory_service=InventoryService(db),
        audit_service=audit,
        delivery_service=DeliveryService(db, audit),
    )


def order_service() -> OrderService:
    db = get_db()
    return OrderService(db, email_service=current_app.extensions["email_service"])


def payment_link_service() -> PaymentLinkService:
    db = get_db()
    return PaymentLinkService(
        db,
        quotation_service=quotation_service(),
        gateway=current_app.extensions["checkout_gateway"],
        email_service=current_app.extensions["email_service"],
    )


def delivery_service() -> DeliveryService:
    db = get_db()
    return DeliveryService(db, AuditService(db))
