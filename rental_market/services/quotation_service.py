from __future__ import annotations

import logging
import math
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from rental_market.auth import CurrentUser, require_role
from rental_market.config import Config
from rental_market.errors import (
    InvalidStateTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from rental_market.lifecycle import QUOTATION_TRANSITIONS, QuotationAction, QuotationStatus
from rental_market.models import (
    Coupon,
    FulfillmentType,
    ProductVariant,
    Quotation,
    QuotationItem,
    User,
    UserRole,
)
from rental_market.observability import increment_counter
from rental_market.services.audit_service import AuditService
from rental_market.services.delivery_service import DeliveryService
from rental_market.services.inventory_service import InventoryService
from rental_market.services.pricing import (
    QuotationTotals,
    compute_rental_price,
    compute_totals,
    period_prices_for,
)
from rental_market.services.transactions import transactional
from rental_market.timeutils import parse_datetime, to_storage, utcnow


def _whole_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool):
        raise ValidationError("Quantity must be a whole number")
    try:
        as_float = float(quantity)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a whole number") from None
    if not math.isfinite(as_float) or not as_float.is_integer():
        raise ValidationError("Quantity must be a whole number")
    return int(as_float)


class QuotationService:
    """Vendor-side quotation lifecycle: DRAFT -> SENT -> CONFIRMED | CANCELLED."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        inventory_service: Optional[InventoryService] = None,
        audit_service: Optional[AuditService] = None,
        delivery_service: Optional[DeliveryService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.inventory_service = inventory_service or InventoryService(db_session)
        self.audit = audit_service or AuditService(db_session)
        self.delivery_service = delivery_service or DeliveryService(db_session, self.audit)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_quotation(
        self,
        actor: CurrentUser,
        customer_id: int,
        fulfillment_type: FulfillmentType | str = FulfillmentType.DELIVERY,
        delivery_charge: float = 0,
    ) -> Quotation:
        require_role(actor, UserRole.VENDOR)
        fulfillment = self._parse_fulfillment(fulfillment_type)
        self._validate_charge(delivery_charge)

        with transactional(self.db, self.logger, "create_quotation"):
            customer = self.db.get(User, customer_id)
            if customer is None or customer.role != UserRole.CUSTOMER:
                raise NotFound(f"Customer {customer_id} not found")

            quotation = Quotation(
                customerID=customer_id,
                vendorID=actor.id,
                status=QuotationStatus.DRAFT,
                fulfillment_type=fulfillment,
                delivery_charge=delivery_charge or 0,
            )
            self.db.add(quotation)
            self.db.flush()
            self.audit.record(actor.id, "CREATE quotation", "Quotation", quotation.quotationID)

        increment_counter("quotations_created_total")
        self.logger.info(
            "Quotation %s created",
            quotation.quotationID,
            extra={"vendor_id": actor.id, "customer_id": customer_id},
        )
        return quotation

    def create_quotations_from_cart(
        self,
        actor: CurrentUser,
        lines: Iterable[Mapping[str, Any]],
        fulfillment_type: FulfillmentType | str = FulfillmentType.DELIVERY,
        distances_km: Optional[Mapping[int, Optional[float]]] = None,
    ) -> List[Quotation]:
        """
        Split a customer's cart into one DRAFT quotation per vendor.

        Delivery is quoted per vendor from that vendor's settings; vendors
        that do not deliver get a pickup quotation with no delivery charge.
        """
        require_role(actor, UserRole.CUSTOMER)
        fulfillment = self._parse_fulfillment(fulfillment_type)
        lines = list(lines)
        if not lines:
            raise ValidationError("Cart is empty")

        by_vendor: "OrderedDict[int, List[Dict[str, Any]]]" = OrderedDict()
        for line in lines:
            variant = self._get_variant(line.get("variant_id"))
            prepared = self._prepare_line(
                variant,
                line.get("quantity"),
                line.get("rental_start"),
                line.get("rental_end"),
                line.get("price"),
            )
            by_vendor.setdefault(variant.vendorID, []).append(prepared)

        charges: Dict[int, Optional[float]] = {}
        if fulfillment == FulfillmentType.DELIVERY:
            quote = self.delivery_service.compute_cart_charges(by_vendor, distances_km)
            charges = {entry["vendor_id"]: entry["charge"] for entry in quote["per_vendor"]}

        created: List[Quotation] = []
        with transactional(self.db, self.logger, "create_quotations_from_cart"):
            for vendor_id, vendor_lines in by_vendor.items():
                charge = charges.get(vendor_id)
                vendor_fulfillment = fulfillment if charge is not None else FulfillmentType.STORE_PICKUP
                quotation = Quotation(
                    customerID=actor.id,
                    vendorID=vendor_id,
                    status=QuotationStatus.DRAFT,
                    fulfillment_type=vendor_fulfillment,
                    delivery_charge=charge or 0,
                    items=[QuotationItem(**prepared) for prepared in vendor_lines],
                )
                self.db.add(quotation)
                self.db.flush()
                self.audit.record(
                    actor.id,
                    "REQUEST quotation",
                    "Quotation",
                    quotation.quotationID,
                    {"items": len(vendor_lines)},
                )
                created.append(quotation)

        increment_counter("quotations_created_total", amount=len(created))
        self.logger.info(
            "Cart submitted as %d quotation(s)",
            len(created),
            extra={"customer_id": actor.id},
        )
        return created

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_quotation(self, actor: CurrentUser, quotation_id: int) -> Quotation:
        require_role(actor, UserRole.VENDOR, UserRole.CUSTOMER, UserRole.ADMIN)
        quotation = self.db.get(Quotation, quotation_id)
        if quotation is None:
            raise NotFound(f"Quotation {quotation_id} not found")
        if not self._can_view(actor, quotation):
            raise Unauthorized("You do not have access to this quotation")
        return quotation

    def list_for_vendor(
        self,
        actor: CurrentUser,
        status: Optional[QuotationStatus | str] = None,
    ) -> List[Quotation]:
        require_role(actor, UserRole.VENDOR)
        query = self.db.query(Quotation).filter(Quotation.vendorID == actor.id)
        if status:
            try:
                query = query.filter(Quotation.status == QuotationStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown quotation status: {status}") from None
        return query.order_by(Quotation.quotationID.desc()).all()

    def get_totals(self, quotation: Quotation) -> QuotationTotals:
        return compute_totals(quotation.items, quotation.coupon, quotation.delivery_charge)

    # ------------------------------------------------------------------
    # DRAFT: line items
    # ------------------------------------------------------------------
    def add_item(
        self,
        actor: CurrentUser,
        quotation_id: int,
        variant_id: int,
        quantity: int,
        rental_start: datetime,
        rental_end: datetime,
        price: Optional[float] = None,
    ) -> Quotation:
        with transactional(self.db, self.logger, "add_quotation_item"):
            quotation = self.load_for_vendor(actor, quotation_id)
            self.apply_transition(quotation, QuotationAction.ADD_ITEM, actor.id, audit=False)

            variant = self._get_variant(variant_id)
            if variant.vendorID != quotation.vendorID:
                raise ValidationError("All items in a quotation must come from the same vendor")
            prepared = self._prepare_line(variant, quantity, rental_start, rental_end, price)
            self._ensure_quotable(quotation, prepared)

            item = QuotationItem(quotationID=quotation.quotationID, **prepared)
            self.db.add(item)
            self.db.flush()
            self.audit.record(
                actor.id,
                "ADD quotation item",
                "Quotation",
                quotation.quotationID,
                {"item_id": item.quotationItemID, "variant_id": variant_id, "quantity": prepared["quantity"]},
            )

        self.logger.info("Item added to quotation %s", quotation_id, extra={"variant_id": variant_id})
        return quotation

    def update_item(
        self,
        actor: CurrentUser,
        item_id: int,
        quantity: Optional[int] = None,
        rental_start: Optional[datetime] = None,
        rental_end: Optional[datetime] = None,
        price: Optional[float] = None,
    ) -> Quotation:
        with transactional(self.db, self.logger, "update_quotation_item"):
            item = self._get_item(item_id)
            quotation = self.load_for_vendor(actor, item.quotationID)
            self.apply_transition(quotation, QuotationAction.UPDATE_ITEM, actor.id, audit=False)

            dates_changed = rental_start is not None or rental_end is not None
            prepared = self._prepare_line(
                item.variant,
                quantity if quantity is not None else item.quantity,
                rental_start if rental_start is not None else item.rental_start,
                rental_end if rental_end is not None else item.rental_end,
                # Re-price on new dates unless the vendor pins a price
                price if price is not None else (None if dates_changed else item.price),
            )
            self._ensure_quotable(quotation, prepared, exclude_item_id=item.quotationItemID)

            item.quantity = prepared["quantity"]
            item.rental_start = prepared["rental_start"]
            item.rental_end = prepared["rental_end"]
            item.price = prepared["price"]
            self.audit.record(
                actor.id,
                "UPDATE quotation item",
                "Quotation",
                quotation.quotationID,
                {"item_id": item_id},
            )

        return quotation

    def delete_item(self, actor: CurrentUser, item_id: int) -> Quotation:
        with transactional(self.db, self.logger, "delete_quotation_item"):
            item = self._get_item(item_id)
            quotation = self.load_for_vendor(actor, item.quotationID)
            self.apply_transition(quotation, QuotationAction.DELETE_ITEM, actor.id, audit=False)

            # Counted after the status write so concurrent deletes see each other
            remaining = (
                self.db.query(func.count(QuotationItem.quotationItemID))
                .filter(QuotationItem.quotationID == quotation.quotationID)
                .scalar()
            )
            if remaining <= 1:
                raise ValidationError("A quotation must keep at least one item")

            self.db.delete(item)
            self.db.flush()
            self.audit.record(
                actor.id,
                "DELETE quotation item",
                "Quotation",
                quotation.quotationID,
                {"item_id": item_id},
            )

        self.db.expire(quotation, ["items"])
        return quotation

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    def send(self, actor: CurrentUser, quotation_id: int) -> Quotation:
        with transactional(self.db, self.logger, "send_quotation"):
            quotation = self.load_for_vendor(actor, quotation_id)
            QUOTATION_TRANSITIONS.next_status(QuotationStatus(quotation.status), QuotationAction.SEND)
            if not quotation.items:
                raise ValidationError("Add at least one item before sending the quotation")
            self.apply_transition(quotation, QuotationAction.SEND, actor.id)

        self.logger.info("Quotation %s sent", quotation_id, extra={"customer_id": quotation.customerID})
        return quotation

    def cancel(self, actor: CurrentUser, quotation_id: int) -> Quotation:
        with transactional(self.db, self.logger, "cancel_quotation"):
            quotation = self.load_for_vendor(actor, quotation_id)
            if quotation.order is not None:
                raise InvalidStateTransition("A quotation with an order cannot be cancelled")
            self.apply_transition(quotation, QuotationAction.CANCEL, actor.id)

        self.logger.info("Quotation %s cancelled", quotation_id)
        return quotation

    # ------------------------------------------------------------------
    # SENT: commercial terms
    # ------------------------------------------------------------------
    def apply_coupon(self, actor: CurrentUser, quotation_id: int, code: str) -> Quotation:
        normalized = (code or "").strip()
        if not normalized:
            raise ValidationError("Coupon code is required")

        with transactional(self.db, self.logger, "apply_coupon"):
            quotation = self.load_for_vendor(actor, quotation_id)
            self.apply_transition(quotation, QuotationAction.APPLY_COUPON, actor.id, {"code": normalized})

            coupon = (
                self.db.query(Coupon)
                .filter(func.upper(Coupon.code) == normalized.upper())
                .first()
            )
            if coupon is None:
                raise NotFound(f"Coupon {normalized} not found")
            if not coupon.is_redeemable(utcnow()):
                raise ValidationError(f"Coupon {coupon.code} is inactive or outside its validity period")
            quotation.couponID = coupon.couponID

        self.db.expire(quotation, ["coupon"])
        return quotation

    def remove_coupon(self, actor: CurrentUser, quotation_id: int) -> Quotation:
        with transactional(self.db, self.logger, "remove_coupon"):
            quotation = self.load_for_vendor(actor, quotation_id)
            self.apply_transition(quotation, QuotationAction.REMOVE_COUPON, actor.id)
            quotation.couponID = None

        self.db.expire(quotation, ["coupon"])
        return quotation

    def update_delivery_charge(self, actor: CurrentUser, quotation_id: int, amount: float) -> Quotation:
        self._validate_charge(amount)
        with transactional(self.db, self.logger, "update_delivery_charge"):
            quotation = self.load_for_vendor(actor, quotation_id)
            self.apply_transition(
                quotation,
                QuotationAction.UPDATE_DELIVERY_CHARGE,
                actor.id,
                {"delivery_charge": float(amount)},
            )
            quotation.delivery_charge = amount
        return quotation

    # ------------------------------------------------------------------
    # Shared with the payment-link and order services
    # ------------------------------------------------------------------
    def load_for_vendor(self, actor: CurrentUser, quotation_id: int) -> Quotation:
        """Fetch the latest persisted quotation, locked, and check ownership."""
        require_role(actor, UserRole.VENDOR)
        quotation = self.load_locked(quotation_id)
        if quotation.vendorID != actor.id:
            raise Unauthorized("You can only manage your own quotations")
        return quotation

    def load_locked(self, quotation_id: int) -> Quotation:
        quotation = (
            self.db.query(Quotation)
            .filter(Quotation.quotationID == quotation_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if quotation is None:
            raise NotFound(f"Quotation {quotation_id} not found")
        return quotation

    def apply_transition(
        self,
        quotation: Quotation,
        action: QuotationAction,
        actor_id: Optional[int],
        details: Optional[Dict[str, Any]] = None,
        audit: bool = True,
    ) -> QuotationStatus:
        """Compare-and-set the status for `action` and write the audit entry."""
        current = QuotationStatus(quotation.status)
        target = QUOTATION_TRANSITIONS.next_status(current, action)
        now = to_storage(utcnow())
        result = self.db.execute(
            update(Quotation)
            .where(Quotation.quotationID == quotation.quotationID, Quotation.status == current)
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                f"Quotation {quotation.quotationID} changed while this request was processed; reload and retry"
            )
        set_committed_value(quotation, "status", target)
        set_committed_value(quotation, "updated_at", now)

        if audit:
            self.audit.record(
                actor_id,
                f"{action.value.upper()} quotation",
                "Quotation",
                quotation.quotationID,
                details,
            )
        if target != current:
            increment_counter(
                "quotation_transitions_total",
                labels={"from_status": current.value, "to_status": target.value},
            )
        return target

    # ------------------------------------------------------------------
    # Helper methods
    # ------------------------------------------------------------------
    @staticmethod
    def _can_view(actor: CurrentUser, quotation: Quotation) -> bool:
        if actor.role == UserRole.ADMIN:
            return True
        if actor.role == UserRole.VENDOR:
            return quotation.vendorID == actor.id
        return quotation.customerID == actor.id

    @staticmethod
    def _parse_fulfillment(value: FulfillmentType | str) -> FulfillmentType:
        try:
            return FulfillmentType(value)
        except ValueError:
            raise ValidationError(f"Unknown fulfillment type: {value}") from None

    @staticmethod
    def _validate_charge(amount: Any) -> None:
        try:
            value = float(amount or 0)
        except (TypeError, ValueError):
            raise ValidationError("Delivery charge must be a number") from None
        if value < 0:
            raise ValidationError("Delivery charge cannot be negative")

    def _get_variant(self, variant_id: Any) -> ProductVariant:
        variant = self.db.get(ProductVariant, variant_id) if variant_id is not None else None
        if variant is None:
            raise NotFound(f"Variant {variant_id} not found")
        return variant

    def _get_item(self, item_id: int) -> QuotationItem:
        item = self.db.get(QuotationItem, item_id)
        if item is None:
            raise NotFound(f"Quotation item {item_id} not found")
        return item

    def _prepare_line(
        self,
        variant: ProductVariant,
        quantity: Any,
        rental_start: Optional[datetime],
        rental_end: Optional[datetime],
        price: Any,
    ) -> Dict[str, Any]:
        quantity_int = _whole_quantity(quantity)
        if quantity_int < 1:
            raise ValidationError("Quantity must be at least 1")
        start, end = parse_datetime(rental_start), parse_datetime(rental_end)
        if start is None or end is None:
            raise ValidationError("Rental start and end must be valid dates")
        start, end = to_storage(start), to_storage(end)
        if end <= start:
            raise ValidationError("Rental end must be after rental start")

        if price is None:
            unit_price = compute_rental_price(period_prices_for(variant), start, end)
        else:
            try:
                unit_price = float(price)
            except (TypeError, ValueError):
                raise ValidationError("Price must be a number") from None
        if unit_price < 0:
            raise ValidationError("Price cannot be negative")

        return {
            "variantID": variant.variantID,
            "quantity": quantity_int,
            "rental_start": start,
            "rental_end": end,
            "price": round(unit_price, 2),
        }

    def _ensure_quotable(
        self,
        quotation: Quotation,
        prepared: Dict[str, Any],
        exclude_item_id: Optional[int] = None,
    ) -> None:
        """Check stock for this line plus overlapping lines of the same variant."""
        already_quoted = sum(
            item.quantity
            for item in quotation.items
            if item.variantID == prepared["variantID"]
            and item.quotationItemID != exclude_item_id
            and item.rental_start < prepared["rental_end"]
            and item.rental_end > prepared["rental_start"]
        )
        self.inventory_service.ensure_available(
            prepared["variantID"],
            prepared["rental_start"],
            prepared["rental_end"],
            prepared["quantity"] + already_quoted,
        )
