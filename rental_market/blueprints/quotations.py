from __future__ import annotations

import json

from flask import Blueprint, jsonify, request

from rental_market.blueprints.common import (
    current_actor,
    int_arg,
    json_payload,
    payment_link_service,
    quotation_service,
    require_fields,
)
from rental_market.blueprints.serializers import serialize_dt, serialize_quotation
from rental_market.models import FulfillmentType
from rental_market.services.audit_service import AuditService
from rental_market.database import get_db

quotations_bp = Blueprint("quotations", __name__)


def _quotation_response(quotation, message: str, status_code: int = 200):
    return jsonify({"success": True, "message": message, "quotation": serialize_quotation(quotation)}), status_code


@quotations_bp.route("/api/quotations", methods=["GET"])
def api_list_quotations():
    quotations = quotation_service().list_for_vendor(current_actor(), request.args.get("status"))
    return jsonify({"quotations": [serialize_quotation(q) for q in quotations]})


@quotations_bp.route("/api/quotations", methods=["POST"])
def api_create_quotation():
    payload = json_payload()
    require_fields(payload, "customer_id")
    quotation = quotation_service().create_quotation(
        current_actor(),
        int_arg(payload, "customer_id"),
        fulfillment_type=payload.get("fulfillment_type", FulfillmentType.DELIVERY.value),
        delivery_charge=payload.get("delivery_charge", 0),
    )
    return _quotation_response(quotation, "Quotation created", 201)


@quotations_bp.route("/api/quotations/<int:quotation_id>", methods=["GET"])
def api_get_quotation(quotation_id: int):
    quotation = quotation_service().get_quotation(current_actor(), quotation_id)
    return jsonify({"quotation": serialize_quotation(quotation)})


@quotations_bp.route("/api/quotations/<int:quotation_id>/items", methods=["POST"])
def api_add_item(quotation_id: int):
    payload = json_payload()
    require_fields(payload, "variant_id", "quantity", "rental_start", "rental_end")
    quotation = quotation_service().add_item(
        current_actor(),
        quotation_id,
        int_arg(payload, "variant_id"),
        payload["quantity"],
        payload["rental_start"],
        payload["rental_end"],
        price=payload.get("price"),
    )
    return _quotation_response(quotation, "Item added", 201)


@quotations_bp.route("/api/quotation-items/<int:item_id>", methods=["PATCH"])
def api_update_item(item_id: int):
    payload = json_payload()
    quotation = quotation_service().update_item(
        current_actor(),
        item_id,
        quantity=payload.get("quantity"),
        rental_start=payload.get("rental_start"),
        rental_end=payload.get("rental_end"),
        price=payload.get("price"),
    )
    return _quotation_response(quotation, "Item updated")


@quotations_bp.route("/api/quotation-items/<int:item_id>", methods=["DELETE"])
def api_delete_item(item_id: int):
    quotation = quotation_service().delete_item(current_actor(), item_id)
    return _quotation_response(quotation, "Item removed")


@quotations_bp.route("/api/quotations/<int:quotation_id>/send", methods=["POST"])
def api_send_quotation(quotation_id: int):
    quotation = quotation_service().send(current_actor(), quotation_id)
    return _quotation_response(quotation, "Quotation sent to customer")


@quotations_bp.route("/api/quotations/<int:quotation_id>/cancel", methods=["POST"])
def api_cancel_quotation(quotation_id: int):
    quotation = quotation_service().cancel(current_actor(), quotation_id)
    return _quotation_response(quotation, "Quotation cancelled")


@quotations_bp.route("/api/quotations/<int:quotation_id>/coupon", methods=["POST"])
def api_apply_coupon(quotation_id: int):
    payload = json_payload()
    require_fields(payload, "code")
    quotation = quotation_service().apply_coupon(current_actor(), quotation_id, str(payload["code"]))
    return _quotation_response(quotation, "Coupon applied")


@quotations_bp.route("/api/quotations/<int:quotation_id>/coupon", methods=["DELETE"])
def api_remove_coupon(quotation_id: int):
    quotation = quotation_service().remove_coupon(current_actor(), quotation_id)
    return _quotation_response(quotation, "Coupon removed")


@quotations_bp.route("/api/quotations/<int:quotation_id>/delivery-charge", methods=["PUT"])
def api_update_delivery_charge(quotation_id: int):
    payload = json_payload()
    require_fields(payload, "amount")
    quotation = quotation_service().update_delivery_charge(current_actor(), quotation_id, payload["amount"])
    return _quotation_response(quotation, "Delivery charge updated")


@quotations_bp.route("/api/quotations/<int:quotation_id>/payment-link", methods=["POST"])
def api_create_payment_link(quotation_id: int):
    result = payment_link_service().create_payment_link_for_quotation(current_actor(), quotation_id)
    return jsonify({"success": True, "message": "Payment link sent", "payment_link": result.to_dict()}), 201


@quotations_bp.route("/api/quotations/<int:quotation_id>/history", methods=["GET"])
def api_quotation_history(quotation_id: int):
    # Ownership check
    quotation_service().get_quotation(current_actor(), quotation_id)
    entries = AuditService(get_db()).history("Quotation", quotation_id)
    return jsonify({
        "history": [
            {
                "action": entry.action,
                "user_id": entry.userID,
                "details": json.loads(entry.details) if entry.details else None,
                "timestamp": serialize_dt(entry.timestamp),
            }
            for entry in entries
        ]
    })
