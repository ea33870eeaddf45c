"""
Outbound email for the rental workflow.

Messages are rendered and appended to an in-memory outbox; a mail
transport can drain the outbox, and tests inspect it directly.
"""
from __future__ import annotations

import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Deque, Dict, List

from rental_market.config import Config
from rental_market.observability import increment_counter
from rental_market.timeutils import utcnow


class EmailDeliveryError(RuntimeError):
    """The message could not be handed to the mail transport."""


@dataclass
class EmailMessage:
    sender: str
    to: str
    subject: str
    body: str
    kind: str
    sent_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "kind": self.kind,
            "sent_at": self.sent_at.isoformat(),
        }


def format_reference(number: int) -> str:
    return f"#{int(number):06d}"


class EmailService:
    def __init__(self, config: type[Config] = Config) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._outbox: Deque[EmailMessage] = deque(maxlen=config.EMAIL_OUTBOX_LIMIT)
        self._lock = Lock()

    @property
    def outbox(self) -> List[EmailMessage]:
        with self._lock:
            return list(self._outbox)

    def clear(self) -> None:
        with self._lock:
            self._outbox.clear()

    def send_payment_link(
        self,
        *,
        to: str,
        customer_name: str,
        vendor_name: str,
        quotation_id: int,
        payment_url: str,
        amount: float,
        currency: str,
    ) -> EmailMessage:
        reference = format_reference(quotation_id)
        body = (
            f"Hi {customer_name},\n\n"
            f"{vendor_name} has sent you a payment link for Quotation {reference}.\n"
            f"Amount due: {amount:.2f} {currency.upper()}\n\n"
            f"Complete your payment here: {payment_url}\n\n"
            "If you did not request this or have any questions, please contact the vendor."
        )
        return self._send(to, f"Payment link for Quotation {reference} - {vendor_name}", body, "payment_link")

    def send_order_placed(
        self,
        *,
        to: str,
        vendor_name: str,
        order_id: int,
        customer_name: str,
    ) -> EmailMessage:
        body = (
            f"Hi {vendor_name},\n\n"
            f"{customer_name} has paid and order {format_reference(order_id)} is confirmed.\n"
            "Prepare the items for pickup or delivery."
        )
        return self._send(to, f"New order {format_reference(order_id)} - {customer_name}", body, "order_placed")

    def send_order_status(
        self,
        *,
        to: str,
        customer_name: str,
        order_id: int,
        status: str,
    ) -> EmailMessage:
        label = status.replace("_", " ").lower()
        body = f"Hi {customer_name},\n\nYour order {format_reference(order_id)} is now {label}."
        return self._send(to, f"Order {format_reference(order_id)} - {label}", body, "order_status")

    def _send(self, to: str, subject: str, body: str, kind: str) -> EmailMessage:
        if not to:
            raise EmailDeliveryError("Recipient address is missing")
        # Simulated transport instability
        if random.random() < self.config.EMAIL_FAILURE_PROBABILITY:
            increment_counter("emails_failed_total", labels={"kind": kind})
            raise EmailDeliveryError("Mail transport unavailable")

        message = EmailMessage(
            sender=self.config.EMAIL_SENDER,
            to=to,
            subject=subject,
            body=body,
            kind=kind,
        )
        with self._lock:
            self._outbox.append(message)

        increment_counter("emails_sent_total", labels={"kind": kind})
        self.logger.info("Email queued", extra={"to": to, "kind": kind})
        return message
