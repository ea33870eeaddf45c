from __future__ import annotations

import time

import pytest

from conftest import FlakyEmailService, StubGateway, actor_for
from rental_market.errors import ExternalServiceError, InvalidStateTransition, Unauthorized, ValidationError
from rental_market.models import QuotationPaymentLinkLog
from rental_market.services.checkout_gateway import CheckoutGateway, call_with_timeout
from rental_market.services.payment_link_service import PaymentLinkService
from rental_market.services.quotation_service import QuotationService

from test_quotation_service import _draft_with_item, _sent


def _service(db_session, gateway, email_service):
    return PaymentLinkService(
        db_session,
        quotation_service=QuotationService(db_session),
        gateway=gateway,
        email_service=email_service,
    )


def _link_count(db_session):
    return db_session.query(QuotationPaymentLinkLog).count()


def test_payment_link_is_sent_once(db_session, vendor, customer, variant, gateway, email_service):
    quotation = _sent(QuotationService(db_session), vendor, customer, variant)
    service = _service(db_session, gateway, email_service)

    result = service.create_payment_link_for_quotation(actor_for(vendor), quotation.quotationID)

    assert result.amount == 600
    assert result.sent_to == customer.email
    assert gateway.calls[0]["amount"] == 600
    assert email_service.outbox[0].to == customer.email
    assert result.url in email_service.outbox[0].body
    assert _link_count(db_session) == 1

    with pytest.raises(InvalidStateTransition):
        service.create_payment_link_for_quotation(actor_for(vendor), quotation.quotationID)
    assert len(gateway.calls) == 1
    assert _link_count(db_session) == 1


def test_email_failure_records_nothing_and_allows_retry(db_session, vendor, customer, variant, gateway):
    quotation = _sent(QuotationService(db_session), vendor, customer, variant)
    email_service = FlakyEmailService(failures=1)
    service = _service(db_session, gateway, email_service)

    with pytest.raises(ExternalServiceError) as excinfo:
        service.create_payment_link_for_quotation(actor_for(vendor), quotation.quotationID)
    assert excinfo.value.retryable is True
    assert _link_count(db_session) == 0

    service.create_payment_link_for_quotation(actor_for(vendor), quotation.quotationID)
    assert _link_count(db_session) == 1
    assert len(email_service.outbox) == 1


def test_gateway_failure_is_retryable(db_session, vendor, customer, variant, email_service):
    quotation = _sent(QuotationService(db_session), vendor, customer, variant)
    service = _service(db_session, StubGateway(fail=True), email_service)

    with pytest.raises(ExternalServiceError):
        service.create_payment_link_for_quotation(actor_for(vendor), quotation.quotationID)
    assert email_service.outbox == []
    assert _link_count(db_session) == 0


def test_draft_quotation_cannot_get_a_link(db_session, vendor, customer, variant, gateway, email_service):
    quotation = _draft_with_item(QuotationService(db_session), vendor, customer, variant)
    service = _service(db_session, gateway, email_service)

    with pytest.raises(InvalidStateTransition):
        service.create_payment_link_for_quotation(actor_for(vendor), quotation.quotationID)
    assert gateway.calls == []


def test_only_the_owning_vendor_can_send(db_session, vendor, other_vendor, customer, variant, gateway, email_service):
    quotation = _sent(QuotationService(db_session), vendor, customer, variant)
    service = _service(db_session, gateway, email_service)

    with pytest.raises(Unauthorized):
        service.create_payment_link_for_quotation(actor_for(other_vendor), quotation.quotationID)


def test_zero_total_is_rejected(db_session, vendor, customer, variant, gateway, email_service):
    quotations = QuotationService(db_session)
    quotation = quotations.create_quotation(actor_for(vendor), customer.userID)
    quotations.add_item(actor_for(vendor), quotation.quotationID, variant.variantID, 1, "2030-03-01T10:00:00", "2030-03-02T10:00:00", price=0)
    quotations.send(actor_for(vendor), quotation.quotationID)

    with pytest.raises(ValidationError):
        _service(db_session, gateway, email_service).create_payment_link_for_quotation(
            actor_for(vendor), quotation.quotationID
        )


class _SlowGateway(CheckoutGateway):
    def create_session(self, **kwargs):
        time.sleep(1)


def test_gateway_call_times_out():
    gateway = _SlowGateway()
    with pytest.raises(ExternalServiceError):
        call_with_timeout(lambda: gateway.create_session(), 0.05, "checkout_session")
