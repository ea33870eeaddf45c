from __future__ import annotations

import pytest
import requests

from rental_market.config import Config
from rental_market.errors import ExternalServiceError
from rental_market.services.checkout_gateway import (
    CheckoutGateway,
    HttpCheckoutGateway,
    SimulatedCheckoutGateway,
)


class _Response:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


class _FakeHttp:
    """Stands in for requests.Session; replays one outcome per post."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _open(http):
    gateway = HttpCheckoutGateway(Config, http=http)
    return gateway.create_session(
        amount=700.5,
        currency="INR",
        description="Quotation #000001",
        customer_email="customer@example.com",
        metadata={"quotation_id": 1},
    )


def test_http_gateway_posts_minor_units_and_returns_session():
    http = _FakeHttp(_Response(200, {"id": "cs_live_1", "url": "https://pay.example.com/cs_live_1"}))

    session = _open(http)

    assert session.session_id == "cs_live_1"
    assert session.url == "https://pay.example.com/cs_live_1"
    assert session.amount_minor == 70050
    sent = http.requests[0]
    assert sent["json"]["amount"] == 70050
    assert sent["json"]["currency"] == "inr"
    assert sent["headers"]["Authorization"].startswith("Bearer ")
    assert sent["timeout"] == Config.PAYMENT_GATEWAY_TIMEOUT_SECONDS


@pytest.mark.parametrize(
    "outcome, message",
    [
        (requests.Timeout("read timed out"), "timed out"),
        (requests.ConnectionError("refused"), "unreachable"),
        (_Response(500, {"error": "boom"}), "HTTP 500"),
        (_Response(200, {"id": "cs_live_2"}), "no payment URL"),
    ],
)
def test_http_gateway_failures_become_retryable_errors(outcome, message):
    with pytest.raises(ExternalServiceError, match=message) as excinfo:
        _open(_FakeHttp(outcome))
    assert excinfo.value.retryable is True


def test_gateway_contract_cannot_be_instantiated():
    with pytest.raises(TypeError):
        CheckoutGateway()


def test_simulated_gateway_keeps_only_recent_sessions():
    class SmallConfig(Config):
        SIMULATED_SESSION_LIMIT = 2
        PAYMENT_GATEWAY_FAILURE_PROBABILITY = 0.0

    gateway = SimulatedCheckoutGateway(SmallConfig)
    created = [
        gateway.create_session(
            amount=10, currency="inr", description="rent", customer_email="c@example.com", metadata={}
        )
        for _ in range(3)
    ]

    assert list(gateway.sessions) == [created[1].session_id, created[2].session_id]
