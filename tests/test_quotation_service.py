from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import RENTAL_END, RENTAL_START, actor_for, make_coupon, make_variant
from rental_market.errors import (
    InvalidStateTransition,
    NotFound,
    OverbookedError,
    Unauthorized,
    ValidationError,
)
from rental_market.lifecycle import QuotationStatus
from rental_market.models import ActivityLog, CouponType, FulfillmentType, QuotationItem
from rental_market.services.delivery_service import DeliveryService
from rental_market.services.quotation_service import QuotationService


def _draft_with_item(service, vendor, customer, variant, quantity=1):
    quotation = service.create_quotation(actor_for(vendor), customer.userID)
    service.add_item(actor_for(vendor), quotation.quotationID, variant.variantID, quantity, RENTAL_START, RENTAL_END)
    return quotation


def _sent(service, vendor, customer, variant, quantity=2):
    quotation = _draft_with_item(service, vendor, customer, variant, quantity)
    return service.send(actor_for(vendor), quotation.quotationID)


def test_add_item_prices_from_rental_period(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _draft_with_item(service, vendor, customer, variant, quantity=2)

    item = quotation.items[0]
    assert float(item.price) == 300  # 3 days at 100/day
    assert service.get_totals(quotation).subtotal == 600


@pytest.mark.parametrize("quantity", [2.7, 0.5, True, "1.5", "two"])
def test_fractional_or_non_numeric_quantity_is_rejected(db_session, vendor, customer, variant, quantity):
    service = QuotationService(db_session)
    quotation = service.create_quotation(actor_for(vendor), customer.userID)

    with pytest.raises(ValidationError, match="whole number"):
        service.add_item(
            actor_for(vendor), quotation.quotationID, variant.variantID, quantity, RENTAL_START, RENTAL_END
        )
    assert db_session.query(QuotationItem).filter_by(quotationID=quotation.quotationID).count() == 0


def test_last_item_cannot_be_deleted(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _draft_with_item(service, vendor, customer, variant)
    only_item_id = quotation.items[0].quotationItemID

    with pytest.raises(ValidationError):
        service.delete_item(actor_for(vendor), only_item_id)
    assert db_session.query(QuotationItem).filter_by(quotationID=quotation.quotationID).count() == 1

    service.add_item(
        actor_for(vendor), quotation.quotationID, variant.variantID, 1, RENTAL_START, RENTAL_END, price=50
    )
    service.delete_item(actor_for(vendor), only_item_id)

    remaining = db_session.query(QuotationItem).filter_by(quotationID=quotation.quotationID).all()
    assert len(remaining) == 1
    assert remaining[0].quotationItemID != only_item_id


def test_send_requires_items(db_session, vendor, customer):
    service = QuotationService(db_session)
    quotation = service.create_quotation(actor_for(vendor), customer.userID)
    with pytest.raises(ValidationError):
        service.send(actor_for(vendor), quotation.quotationID)
    db_session.refresh(quotation)
    assert quotation.status == QuotationStatus.DRAFT


def test_send_on_cancelled_empty_quotation_is_a_state_error(db_session, vendor, customer):
    service = QuotationService(db_session)
    quotation = service.create_quotation(actor_for(vendor), customer.userID)
    service.cancel(actor_for(vendor), quotation.quotationID)

    with pytest.raises(InvalidStateTransition):
        service.send(actor_for(vendor), quotation.quotationID)


def test_items_are_frozen_once_sent(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _sent(service, vendor, customer, variant)
    item_id = quotation.items[0].quotationItemID

    with pytest.raises(InvalidStateTransition):
        service.add_item(actor_for(vendor), quotation.quotationID, variant.variantID, 1, RENTAL_START, RENTAL_END)
    with pytest.raises(InvalidStateTransition):
        service.update_item(actor_for(vendor), item_id, quantity=3)
    with pytest.raises(InvalidStateTransition):
        service.delete_item(actor_for(vendor), item_id)


def test_coupon_and_delivery_only_in_sent(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    make_coupon(db_session, code="SAVE300", coupon_type=CouponType.FLAT, value=300)
    draft = _draft_with_item(service, vendor, customer, variant)

    with pytest.raises(InvalidStateTransition):
        service.apply_coupon(actor_for(vendor), draft.quotationID, "SAVE300")

    service.send(actor_for(vendor), draft.quotationID)
    quotation = service.apply_coupon(actor_for(vendor), draft.quotationID, "save300")
    quotation = service.update_delivery_charge(actor_for(vendor), draft.quotationID, 100)

    totals = service.get_totals(quotation)
    assert totals.subtotal == 300
    assert totals.discount_amt == 300
    assert totals.total == 100

    quotation = service.remove_coupon(actor_for(vendor), draft.quotationID)
    assert service.get_totals(quotation).total == 400


def test_expired_or_unknown_coupon_is_rejected(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    make_coupon(db_session, code="OLD", is_active=False)
    quotation = _sent(service, vendor, customer, variant)

    with pytest.raises(ValidationError):
        service.apply_coupon(actor_for(vendor), quotation.quotationID, "OLD")
    with pytest.raises(NotFound):
        service.apply_coupon(actor_for(vendor), quotation.quotationID, "NOPE")


def test_negative_delivery_charge_is_rejected(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _sent(service, vendor, customer, variant)
    with pytest.raises(ValidationError):
        service.update_delivery_charge(actor_for(vendor), quotation.quotationID, -1)


def test_cancelled_quotation_is_terminal(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _sent(service, vendor, customer, variant)
    service.cancel(actor_for(vendor), quotation.quotationID)

    for attempt in (
        lambda: service.send(actor_for(vendor), quotation.quotationID),
        lambda: service.update_delivery_charge(actor_for(vendor), quotation.quotationID, 10),
        lambda: service.cancel(actor_for(vendor), quotation.quotationID),
    ):
        with pytest.raises(InvalidStateTransition):
            attempt()


def test_other_vendor_cannot_edit(db_session, vendor, other_vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _draft_with_item(service, vendor, customer, variant)

    with pytest.raises(Unauthorized):
        service.send(actor_for(other_vendor), quotation.quotationID)
    with pytest.raises(Unauthorized):
        service.get_quotation(actor_for(other_vendor), quotation.quotationID)
    assert service.get_quotation(actor_for(customer), quotation.quotationID).quotationID == quotation.quotationID


def test_items_must_come_from_the_quotation_vendor(db_session, vendor, other_vendor, customer, variant):
    service = QuotationService(db_session)
    foreign_variant = make_variant(db_session, other_vendor, quantity=2, sku="TENT")
    quotation = _draft_with_item(service, vendor, customer, variant)

    with pytest.raises(ValidationError):
        service.add_item(
            actor_for(vendor), quotation.quotationID, foreign_variant.variantID, 1, RENTAL_START, RENTAL_END
        )


def test_add_item_checks_availability(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _draft_with_item(service, vendor, customer, variant, quantity=4)

    with pytest.raises(OverbookedError):
        service.add_item(
            actor_for(vendor),
            quotation.quotationID,
            variant.variantID,
            2,
            RENTAL_START + timedelta(days=1),
            RENTAL_END,
        )


def test_transitions_are_audited(db_session, vendor, customer, variant):
    service = QuotationService(db_session)
    quotation = _sent(service, vendor, customer, variant)

    actions = [row.action for row in db_session.query(ActivityLog).filter_by(entity_id=quotation.quotationID)]
    assert "CREATE quotation" in actions
    assert "ADD quotation item" in actions
    assert "SEND quotation" in actions


def test_cart_is_split_per_vendor(db_session, vendor, other_vendor, customer, variant):
    DeliveryService(db_session).save_config(
        actor_for(vendor), is_delivery_enabled=True, charge_type="FLAT", flat_charge=150
    )
    tent = make_variant(db_session, other_vendor, quantity=2, day_price=40, sku="TENT")
    service = QuotationService(db_session)

    quotations = service.create_quotations_from_cart(
        actor_for(customer),
        [
            {"variant_id": variant.variantID, "quantity": 1, "rental_start": RENTAL_START, "rental_end": RENTAL_END},
            {"variant_id": tent.variantID, "quantity": 2, "rental_start": RENTAL_START, "rental_end": RENTAL_END},
        ],
    )

    assert len(quotations) == 2
    by_vendor = {q.vendorID: q for q in quotations}
    assert all(q.status == QuotationStatus.DRAFT for q in quotations)
    assert float(by_vendor[vendor.userID].delivery_charge) == 150
    assert by_vendor[vendor.userID].fulfillment_type == FulfillmentType.DELIVERY
    assert by_vendor[other_vendor.userID].fulfillment_type == FulfillmentType.STORE_PICKUP
    assert float(by_vendor[other_vendor.userID].delivery_charge) == 0
