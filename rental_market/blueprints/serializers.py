from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from rental_market.lifecycle import ORDER_TRANSITIONS, QUOTATION_TRANSITIONS, OrderStatus, QuotationStatus
from rental_market.models import (
    Invoice,
    Quotation,
    QuotationItem,
    RentalOrder,
    RentalReturn,
    VendorDeliveryConfig,
)
from rental_market.services.pricing import compute_totals, round_money


def serialize_dt(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _money(value: Any) -> Optional[float]:
    return None if value is None else round_money(value)


def serialize_quotation_item(item: QuotationItem) -> Dict[str, Any]:
    variant = item.variant
    return {
        "id": item.quotationItemID,
        "variant_id": item.variantID,
        "sku": variant.sku if variant else None,
        "product_name": variant.product.name if variant and variant.product else None,
        "quantity": item.quantity,
        "rental_start": serialize_dt(item.rental_start),
        "rental_end": serialize_dt(item.rental_end),
        "price": _money(item.price),
        "line_total": round_money(float(item.price) * item.quantity),
    }


def serialize_quotation(quotation: Quotation) -> Dict[str, Any]:
    status = QuotationStatus(quotation.status)
    totals = compute_totals(quotation.items, quotation.coupon, quotation.delivery_charge)
    return {
        "id": quotation.quotationID,
        "customer_id": quotation.customerID,
        "vendor_id": quotation.vendorID,
        "status": status.value,
        "fulfillment_type": enum_value(quotation.fulfillment_type),
        "coupon_code": quotation.coupon.code if quotation.coupon else None,
        "items": [serialize_quotation_item(item) for item in quotation.items],
        "totals": totals.to_dict(),
        "allowed_actions": [action.value for action in QUOTATION_TRANSITIONS.allowed_actions(status)],
        "payment_link_sent": quotation.payment_link_log is not None,
        "order_id": quotation.order.orderID if quotation.order else None,
        "created_at": serialize_dt(quotation.created_at),
        "updated_at": serialize_dt(quotation.updated_at),
    }


def serialize_invoice(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.invoiceID,
        "order_id": invoice.orderID,
        "status": enum_value(invoice.status),
        "rental_amount": _money(invoice.rental_amount),
        "security_deposit": _money(invoice.security_deposit),
        "delivery_charge": _money(invoice.delivery_charge),
        "total_amount": _money(invoice.total_amount),
        "paid_amount": _money(invoice.paid_amount),
        "balance_due": invoice.balance_due,
        "payments": [
            {
                "id": payment.paymentID,
                "amount": _money(payment.amount),
                "reference": payment.external_reference,
                "paid_at": serialize_dt(payment.paid_at),
            }
            for payment in invoice.payments
        ],
        "created_at": serialize_dt(invoice.created_at),
    }


def serialize_return(rental_return: RentalReturn) -> Dict[str, Any]:
    return {
        "id": rental_return.returnID,
        "order_id": rental_return.orderID,
        "returned_at": serialize_dt(rental_return.returned_at),
        "late_fee": _money(rental_return.late_fee),
        "damage_fee": _money(rental_return.damage_fee),
        "deposit_refunded": _money(rental_return.deposit_refunded),
        "total_fees": rental_return.total_fees,
    }


def serialize_order(order: RentalOrder) -> Dict[str, Any]:
    status = OrderStatus(order.status)
    pickup = order.pickup
    delivery = order.delivery
    return {
        "id": order.orderID,
        "quotation_id": order.quotationID,
        "customer_id": order.customerID,
        "vendor_id": order.vendorID,
        "status": status.value,
        "fulfillment_type": enum_value(order.fulfillment_type),
        "delivery_charge": _money(order.delivery_charge),
        "coupon_code": order.coupon_code,
        "discount_amt": _money(order.discount_amt),
        "items": [
            {
                "id": item.orderItemID,
                "variant_id": item.variantID,
                "quantity": item.quantity,
                "rental_start": serialize_dt(item.rental_start),
                "rental_end": serialize_dt(item.rental_end),
                "price": _money(item.price),
                "line_total": round_money(item.line_total),
            }
            for item in order.items
        ],
        "allowed_actions": [action.value for action in ORDER_TRANSITIONS.allowed_actions(status)],
        "invoice": serialize_invoice(order.invoice) if order.invoice else None,
        "return": serialize_return(order.rental_return) if order.rental_return else None,
        "pickup": {"picked_at": serialize_dt(pickup.picked_at)} if pickup else None,
        "delivery": {
            "shipped_at": serialize_dt(delivery.shipped_at),
            "delivered_at": serialize_dt(delivery.delivered_at),
        } if delivery else None,
        "reservations": [
            {
                "id": reservation.reservationID,
                "variant_id": reservation.variantID,
                "quantity": reservation.quantity,
                "status": enum_value(reservation.status),
            }
            for reservation in order.reservations
        ],
        "created_at": serialize_dt(order.created_at),
        "updated_at": serialize_dt(order.updated_at),
    }


def serialize_delivery_config(config: Optional[VendorDeliveryConfig]) -> Optional[Dict[str, Any]]:
    if config is None:
        return None
    return {
        "vendor_id": config.vendorID,
        "is_delivery_enabled": bool(config.is_delivery_enabled),
        "charge_type": enum_value(config.charge_type),
        "flat_charge": _money(config.flat_charge),
        "rate_per_km": _money(config.rate_per_km),
        "free_above_amount": _money(config.free_above_amount),
        "max_delivery_km": None if config.max_delivery_km is None else float(config.max_delivery_km),
        "updated_at": serialize_dt(config.updated_at),
    }
