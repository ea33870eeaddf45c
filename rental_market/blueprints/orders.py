from __future__ import annotations

from flask import Blueprint, jsonify, request

from rental_market.blueprints.common import current_actor, json_payload, order_service, require_fields
from rental_market.blueprints.serializers import serialize_invoice, serialize_order, serialize_return

orders_bp = Blueprint("orders", __name__)


def _order_response(order, message: str, status_code: int = 200):
    return jsonify({"success": True, "message": message, "order": serialize_order(order)}), status_code


@orders_bp.route("/api/orders", methods=["GET"])
def api_list_orders():
    try:
        page = int(request.args.get("page", 1))
    except ValueError:
        page = 1
    result = order_service().list_orders(current_actor(), status=request.args.get("status"), page=page)
    return jsonify({
        "orders": [serialize_order(order) for order in result["orders"]],
        "total": result["total"],
        "page": result["page"],
        "page_size": result["page_size"],
    })


@orders_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def api_get_order(order_id: int):
    order = order_service().get_order(current_actor(), order_id)
    return jsonify({"order": serialize_order(order)})


@orders_bp.route("/api/orders/<int:order_id>/invoice", methods=["POST"])
def api_create_invoice(order_id: int):
    invoice = order_service().create_invoice(current_actor(), order_id)
    return jsonify({"success": True, "message": "Invoice created", "invoice": serialize_invoice(invoice)}), 201


@orders_bp.route("/api/invoices/<int:invoice_id>/payments", methods=["POST"])
def api_record_invoice_payment(invoice_id: int):
    payload = json_payload()
    require_fields(payload, "amount")
    invoice = order_service().record_invoice_payment(
        current_actor(),
        invoice_id,
        payload["amount"],
        external_reference=payload.get("reference"),
    )
    return jsonify({"success": True, "message": "Payment recorded", "invoice": serialize_invoice(invoice)})


@orders_bp.route("/api/orders/<int:order_id>/fulfillment", methods=["POST"])
def api_record_fulfillment(order_id: int):
    payload = json_payload()
    order = order_service().record_fulfillment(
        current_actor(),
        order_id,
        method=payload.get("method"),
        at=payload.get("at"),
    )
    return _order_response(order, "Fulfillment recorded")


@orders_bp.route("/api/orders/<int:order_id>/return", methods=["POST"])
def api_record_return(order_id: int):
    payload = json_payload()
    require_fields(payload, "returned_at")
    rental_return = order_service().record_return(
        current_actor(),
        order_id,
        payload["returned_at"],
        late_fee=payload.get("late_fee", 0),
        damage_fee=payload.get("damage_fee", 0),
        deposit_refunded=payload.get("deposit_refunded", 0),
    )
    return jsonify({"success": True, "message": "Return recorded", "return": serialize_return(rental_return)}), 201


@orders_bp.route("/api/orders/<int:order_id>/cancel", methods=["POST"])
def api_cancel_order(order_id: int):
    payload = json_payload()
    order = order_service().cancel_order(current_actor(), order_id, reason=payload.get("reason"))
    return _order_response(order, "Order cancelled")
