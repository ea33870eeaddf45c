from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_market.auth import CurrentUser
from rental_market.config import Config
from rental_market.errors import ExternalServiceError, InvalidStateTransition, ValidationError
from rental_market.lifecycle import QUOTATION_TRANSITIONS, QuotationAction, QuotationStatus
from rental_market.models import Quotation, QuotationPaymentLinkLog
from rental_market.observability import increment_counter, record_event
from rental_market.services.checkout_gateway import (
    CheckoutGateway,
    SimulatedCheckoutGateway,
    open_checkout_session,
)
from rental_market.services.email_service import EmailDeliveryError, EmailService
from rental_market.services.quotation_service import QuotationService
from rental_market.services.transactions import transactional


@dataclass(frozen=True)
class PaymentLinkResult:
    quotation_id: int
    url: str
    session_id: str
    amount: float
    currency: str
    sent_to: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quotation_id": self.quotation_id,
            "url": self.url,
            "session_id": self.session_id,
            "amount": self.amount,
            "currency": self.currency,
            "sent_to": self.sent_to,
        }


class PaymentLinkService:
    """
    Sends the customer a single hosted-checkout link for a SENT quotation.

    The checkout session is opened and the email sent before the log row is
    written. If either external step fails nothing is recorded and the
    vendor may retry; once the log row exists further attempts are refused.
    """

    def __init__(
        self,
        db_session: Session,
        quotation_service: Optional[QuotationService] = None,
        gateway: Optional[CheckoutGateway] = None,
        email_service: Optional[EmailService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.quotation_service = quotation_service or QuotationService(db_session, config=config)
        self.gateway = gateway or SimulatedCheckoutGateway(config)
        self.email_service = email_service or EmailService(config)

    def create_payment_link_for_quotation(self, actor: CurrentUser, quotation_id: int) -> PaymentLinkResult:
        with transactional(self.db, self.logger, "payment_link_precheck"):
            quotation = self.quotation_service.load_for_vendor(actor, quotation_id)
            self._ensure_link_allowed(quotation)
            totals = self.quotation_service.get_totals(quotation)
            if totals.total <= 0:
                raise ValidationError("Quotation total must be greater than zero to request payment")
            customer = quotation.customer
            vendor = quotation.vendor
            customer_email = customer.email
            customer_name = customer.display_name
            vendor_name = vendor.display_name

        session = open_checkout_session(
            self.gateway,
            amount=totals.total,
            currency=self.config.PAYMENT_CURRENCY,
            description=f"Quotation #{quotation_id:06d}",
            customer_email=customer_email,
            metadata={"quotation_id": str(quotation_id), "vendor_id": str(actor.id)},
            timeout_seconds=self.config.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        )

        try:
            self.email_service.send_payment_link(
                to=customer_email,
                customer_name=customer_name,
                vendor_name=vendor_name,
                quotation_id=quotation_id,
                payment_url=session.url,
                amount=totals.total,
                currency=self.config.PAYMENT_CURRENCY,
            )
        except EmailDeliveryError as exc:
            increment_counter("payment_links_failed_total", labels={"reason": "email"})
            self.logger.warning(
                "Payment link email failed for quotation %s: %s",
                quotation_id,
                exc,
                extra={"session_id": session.session_id},
            )
            raise ExternalServiceError(
                "The payment link email could not be sent. Nothing was recorded; please retry."
            ) from exc

        with transactional(self.db, self.logger, "create_payment_link"):
            quotation = self.quotation_service.load_for_vendor(actor, quotation_id)
            # A concurrent request may have won while the email was in flight
            self._ensure_link_allowed(quotation)
            self.quotation_service.apply_transition(
                quotation,
                QuotationAction.CREATE_PAYMENT_LINK,
                actor.id,
                {"session_id": session.session_id, "amount": totals.total},
            )
            self.db.add(
                QuotationPaymentLinkLog(
                    quotationID=quotation_id,
                    url=session.url,
                    sent_to=customer_email,
                    sent_by_userID=actor.id,
                )
            )
            try:
                self.db.flush()
            except IntegrityError:
                raise InvalidStateTransition(self._already_sent_message(quotation_id)) from None

        increment_counter("payment_links_sent_total")
        record_event("payment_link_sent", {"quotation_id": quotation_id, "amount": totals.total})
        self.logger.info(
            "Payment link sent for quotation %s",
            quotation_id,
            extra={"sent_to": customer_email, "session_id": session.session_id},
        )
        return PaymentLinkResult(
            quotation_id=quotation_id,
            url=session.url,
            session_id=session.session_id,
            amount=totals.total,
            currency=self.config.PAYMENT_CURRENCY,
            sent_to=customer_email,
        )

    def get_link_log(self, quotation_id: int) -> Optional[QuotationPaymentLinkLog]:
        return (
            self.db.query(QuotationPaymentLinkLog)
            .filter(QuotationPaymentLinkLog.quotationID == quotation_id)
            .first()
        )

    def _ensure_link_allowed(self, quotation: Quotation) -> None:
        QUOTATION_TRANSITIONS.next_status(QuotationStatus(quotation.status), QuotationAction.CREATE_PAYMENT_LINK)
        if quotation.order is not None:
            raise InvalidStateTransition(f"Quotation {quotation.quotationID} has already been converted to an order")
        if self.get_link_log(quotation.quotationID) is not None:
            raise InvalidStateTransition(self._already_sent_message(quotation.quotationID))

    @staticmethod
    def _already_sent_message(quotation_id: int) -> str:
        return f"A payment link was already sent for quotation {quotation_id}"
