from __future__ import annotations

import pytest

from rental_market.config import Config
from rental_market.services.email_service import EmailDeliveryError, EmailService


class _SmallOutboxConfig(Config):
    EMAIL_OUTBOX_LIMIT = 2
    EMAIL_FAILURE_PROBABILITY = 0.0


def _order_status(service, order_id):
    return service.send_order_status(
        to="customer@example.com", customer_name="Customer", order_id=order_id, status="PICKED_UP"
    )


def test_outbox_drops_oldest_messages_past_limit():
    service = EmailService(_SmallOutboxConfig)
    for order_id in (1, 2, 3):
        _order_status(service, order_id)

    outbox = service.outbox
    assert len(outbox) == 2
    assert [message.subject for message in outbox] == [
        "Order #000002 - picked up",
        "Order #000003 - picked up",
    ]


def test_missing_recipient_is_not_queued():
    service = EmailService(_SmallOutboxConfig)
    with pytest.raises(EmailDeliveryError):
        service.send_order_status(to="", customer_name="Customer", order_id=1, status="ACTIVE")
    assert service.outbox == []
