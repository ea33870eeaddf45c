"""
End-to-end tests for the JSON API.

Runs against the application's own engine (the throwaway database configured
in conftest), with the checkout gateway and mail outbox swapped for stubs.
"""
import json

import pytest

from conftest import RENTAL_END, RENTAL_START, FlakyEmailService, StubGateway, make_user, make_variant
from rental_market.blueprints.checkout import SIGNATURE_HEADER, sign_payload
from rental_market.database import Base, SessionLocal, engine
from rental_market.main import app
from rental_market.models import UserRole


@pytest.fixture
def client():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    saved = dict(app.extensions)
    app.extensions["checkout_gateway"] = StubGateway()
    app.extensions["email_service"] = FlakyEmailService()
    with app.test_client() as client:
        yield client
    app.extensions.clear()
    app.extensions.update(saved)


@pytest.fixture
def people():
    db = SessionLocal()
    vendor = make_user(db, UserRole.VENDOR, "Api Vendor", company_name="Api Rentals")
    customer = make_user(db, UserRole.CUSTOMER, "Api Customer")
    admin = make_user(db, UserRole.ADMIN, "Api Admin")
    variant = make_variant(db, vendor, quantity=3, day_price=100)
    ids = {
        "vendor": vendor.userID,
        "customer": customer.userID,
        "admin": admin.userID,
        "variant": variant.variantID,
    }
    db.close()
    return ids


def _login(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


def _webhook(client, event):
    body = json.dumps(event).encode("utf-8")
    signature = sign_payload(body, app.config["PAYMENT_WEBHOOK_SECRET"])
    return client.post(
        "/api/payments/webhook",
        data=body,
        content_type="application/json",
        headers={SIGNATURE_HEADER: signature},
    )


def _sent_quotation(client, people, quantity=2):
    _login(client, people["vendor"])
    response = client.post("/api/quotations", json={"customer_id": people["customer"]})
    assert response.status_code == 201
    quotation_id = response.get_json()["quotation"]["id"]

    response = client.post(
        f"/api/quotations/{quotation_id}/items",
        json={
            "variant_id": people["variant"],
            "quantity": quantity,
            "rental_start": RENTAL_START.isoformat(),
            "rental_end": RENTAL_END.isoformat(),
        },
    )
    assert response.status_code == 201

    response = client.post(f"/api/quotations/{quotation_id}/send")
    assert response.get_json()["quotation"]["status"] == "SENT"
    return quotation_id


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code in (200, 503)
    assert "status" in response.get_json()


def test_anonymous_requests_are_rejected(client, people):
    response = client.post("/api/quotations", json={"customer_id": people["customer"]})
    assert response.status_code == 403
    body = response.get_json()
    assert body["success"] is False
    assert body["error"] == "Unauthorized"


def test_quote_to_paid_order_flow(client, people):
    quotation_id = _sent_quotation(client, people)

    response = client.put(f"/api/quotations/{quotation_id}/delivery-charge", json={"amount": 100})
    assert response.get_json()["quotation"]["totals"] == {
        "subtotal": 600,
        "discount_amt": 0,
        "delivery_charge": 100,
        "total": 700,
    }

    response = client.post(f"/api/quotations/{quotation_id}/payment-link")
    assert response.status_code == 201
    link = response.get_json()["payment_link"]
    assert link["amount"] == 700

    response = client.post(f"/api/quotations/{quotation_id}/payment-link")
    assert response.status_code == 409

    event = {
        "type": "checkout.session.completed",
        "data": {"quotation_id": quotation_id, "payment_reference": link["session_id"]},
    }
    first = _webhook(client, event).get_json()
    assert first["handled"] is True
    order_id = first["order_id"]

    second = _webhook(client, event).get_json()
    assert second == {"received": True, "handled": False, "order_id": None}

    response = client.get(f"/api/variants/{people['variant']}/availability?start={RENTAL_START.isoformat()}&end={RENTAL_END.isoformat()}")
    assert response.get_json()["available"] == 1

    response = client.post(f"/api/orders/{order_id}/invoice")
    assert response.status_code == 201
    assert response.get_json()["invoice"]["total_amount"] == 700

    response = client.post(f"/api/orders/{order_id}/return", json={"returned_at": RENTAL_END.isoformat()})
    assert response.status_code == 201

    response = client.get(f"/api/orders/{order_id}")
    assert response.get_json()["order"]["status"] == "COMPLETED"

    response = client.post(f"/api/orders/{order_id}/return", json={"returned_at": RENTAL_END.isoformat()})
    assert response.status_code == 409


def test_webhook_requires_valid_signature(client, people):
    response = client.post(
        "/api/payments/webhook",
        data=json.dumps({"type": "checkout.session.completed", "data": {"quotation_id": 1}}),
        content_type="application/json",
        headers={SIGNATURE_HEADER: "forged"},
    )
    assert response.status_code == 403


def test_other_webhook_events_are_acknowledged(client):
    response = _webhook(client, {"type": "checkout.session.expired", "data": {}})
    assert response.status_code == 200
    assert response.get_json() == {"received": True, "handled": False}


def test_email_failure_returns_retryable_error(client, people):
    quotation_id = _sent_quotation(client, people)
    app.extensions["email_service"].failures = 1

    response = client.post(f"/api/quotations/{quotation_id}/payment-link")
    assert response.status_code == 502
    assert response.get_json()["retryable"] is True

    response = client.get(f"/api/quotations/{quotation_id}")
    assert response.get_json()["quotation"]["payment_link_sent"] is False

    response = client.post(f"/api/quotations/{quotation_id}/payment-link")
    assert response.status_code == 201


def test_last_item_cannot_be_removed_over_api(client, people):
    _login(client, people["vendor"])
    response = client.post("/api/quotations", json={"customer_id": people["customer"]})
    quotation_id = response.get_json()["quotation"]["id"]
    response = client.post(
        f"/api/quotations/{quotation_id}/items",
        json={
            "variant_id": people["variant"],
            "quantity": 1,
            "rental_start": RENTAL_START.isoformat(),
            "rental_end": RENTAL_END.isoformat(),
        },
    )
    item_id = response.get_json()["quotation"]["items"][0]["id"]

    response = client.delete(f"/api/quotation-items/{item_id}")
    assert response.status_code == 400
    assert response.get_json()["error"] == "ValidationError"


def test_delivery_quote_endpoint(client, people):
    _login(client, people["vendor"])
    response = client.put(
        "/api/vendor/delivery-settings",
        json={"is_delivery_enabled": True, "charge_type": "FLAT", "flat_charge": 150, "free_above_amount": 2000},
    )
    assert response.status_code == 200

    response = client.post(
        "/api/delivery/quote",
        json={"lines": [{"vendor_id": people["vendor"], "quantity": 1, "price": 2500}]},
    )
    assert response.get_json()["total_delivery_charge"] == 0


def test_admin_endpoints_require_admin(client, people):
    _login(client, people["vendor"])
    assert client.get("/admin/metrics").status_code == 403

    _login(client, people["admin"])
    assert client.get("/admin/metrics").status_code == 200
    response = client.get("/api/admin/analytics?quarter=2030-Q1")
    assert response.status_code == 200
    assert response.get_json()["quarter"]["key"] == "2030-Q1"


def test_cart_checkout_rejects_negative_distance(client, people):
    _login(client, people["vendor"])
    response = client.put(
        "/api/vendor/delivery-settings",
        json={"is_delivery_enabled": True, "charge_type": "PER_KM", "rate_per_km": 10, "max_delivery_km": 50},
    )
    assert response.status_code == 200

    _login(client, people["customer"])
    response = client.post(
        "/api/cart/checkout",
        json={
            "lines": [{
                "variant_id": people["variant"],
                "quantity": 1,
                "rental_start": RENTAL_START.isoformat(),
                "rental_end": RENTAL_END.isoformat(),
            }],
            "distances_km": {str(people["vendor"]): -20},
        },
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "ValidationError"

    _login(client, people["vendor"])
    response = client.get("/api/quotations")
    assert response.get_json()["quotations"] == []
