from __future__ import annotations

import hashlib
import hmac
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request

from rental_market.auth import require_role
from rental_market.blueprints.common import (
    current_actor,
    delivery_service,
    json_payload,
    order_service,
    quotation_service,
    require_fields,
)
from rental_market.blueprints.serializers import serialize_delivery_config, serialize_quotation
from rental_market.database import get_db
from rental_market.errors import Unauthorized, ValidationError
from rental_market.models import FulfillmentType, UserRole
from rental_market.observability import increment_counter
from rental_market.services.delivery_service import validate_distance
from rental_market.services.inventory_service import InventoryService

checkout_bp = Blueprint("checkout", __name__)
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Payment-Signature"
PAYMENT_COMPLETED_EVENT = "checkout.session.completed"


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _distances(payload: Dict[str, Any]) -> Dict[int, Optional[float]]:
    raw = payload.get("distances_km") or {}
    if not isinstance(raw, dict):
        raise ValidationError("distances_km must map vendor ids to kilometres")
    distances: Dict[int, Optional[float]] = {}
    for vendor_id, km in raw.items():
        try:
            key = int(vendor_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid vendor id in distances_km: {vendor_id}") from None
        distances[key] = None if km is None else validate_distance(km)
    return distances


@checkout_bp.route("/api/delivery/quote", methods=["POST"])
def api_delivery_quote():
    payload = json_payload()
    lines = payload.get("lines")
    if not isinstance(lines, list) or not lines:
        raise ValidationError("lines are required")

    by_vendor: "OrderedDict[int, list]" = OrderedDict()
    for line in lines:
        require_fields(line, "vendor_id", "quantity", "price")
        try:
            by_vendor.setdefault(int(line["vendor_id"]), []).append(
                {"quantity": float(line["quantity"]), "price": float(line["price"])}
            )
        except (TypeError, ValueError):
            raise ValidationError("vendor_id, quantity and price must be numbers") from None

    return jsonify(delivery_service().compute_cart_charges(by_vendor, _distances(payload)))


@checkout_bp.route("/api/vendor/delivery-settings", methods=["GET"])
def api_get_delivery_settings():
    actor = require_role(current_actor(), UserRole.VENDOR)
    return jsonify({"settings": serialize_delivery_config(delivery_service().get_config(actor.id))})


@checkout_bp.route("/api/vendor/delivery-settings", methods=["PUT"])
def api_save_delivery_settings():
    payload = json_payload()
    require_fields(payload, "charge_type")
    config = delivery_service().save_config(
        current_actor(),
        is_delivery_enabled=bool(payload.get("is_delivery_enabled", False)),
        charge_type=payload["charge_type"],
        flat_charge=payload.get("flat_charge"),
        rate_per_km=payload.get("rate_per_km"),
        free_above_amount=payload.get("free_above_amount"),
        max_delivery_km=payload.get("max_delivery_km"),
    )
    return jsonify({"success": True, "message": "Delivery settings saved", "settings": serialize_delivery_config(config)})


@checkout_bp.route("/api/variants/<int:variant_id>/availability", methods=["GET"])
def api_variant_availability(variant_id: int):
    start, end = request.args.get("start"), request.args.get("end")
    available = InventoryService(get_db()).available_quantity(variant_id, start, end)
    return jsonify({"variant_id": variant_id, "start": start, "end": end, "available": available})


@checkout_bp.route("/api/cart/checkout", methods=["POST"])
def api_cart_checkout():
    payload = json_payload()
    lines = payload.get("lines")
    if not isinstance(lines, list):
        raise ValidationError("lines are required")
    quotations = quotation_service().create_quotations_from_cart(
        current_actor(),
        lines,
        fulfillment_type=payload.get("fulfillment_type", FulfillmentType.DELIVERY.value),
        distances_km=_distances(payload),
    )
    return jsonify({
        "success": True,
        "message": f"{len(quotations)} quotation request(s) submitted",
        "quotations": [serialize_quotation(q) for q in quotations],
    }), 201


@checkout_bp.route("/api/payments/webhook", methods=["POST"])
def api_payment_webhook():
    body = request.get_data()
    secret = current_app.config["PAYMENT_WEBHOOK_SECRET"]
    provided = request.headers.get(SIGNATURE_HEADER, "")
    if not hmac.compare_digest(sign_payload(body, secret), provided):
        increment_counter("payment_webhooks_rejected_total")
        logger.warning("Payment webhook rejected: bad signature")
        raise Unauthorized("Invalid webhook signature")

    event = json_payload()
    if event.get("type") != PAYMENT_COMPLETED_EVENT:
        return jsonify({"received": True, "handled": False})

    data = event.get("data") or {}
    try:
        quotation_id = int(data.get("quotation_id"))
    except (TypeError, ValueError):
        raise ValidationError("data.quotation_id is required") from None

    order = order_service().confirm_paid_quotation(quotation_id, payment_reference=data.get("payment_reference"))
    increment_counter("payment_webhooks_total", labels={"outcome": "order_created" if order else "ignored"})
    return jsonify({"received": True, "handled": order is not None, "order_id": order.orderID if order else None})
