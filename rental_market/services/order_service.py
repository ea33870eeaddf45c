from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
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
from rental_market.lifecycle import (
    ORDER_TRANSITIONS,
    OrderAction,
    OrderStatus,
    QuotationAction,
    QuotationStatus,
)
from rental_market.models import (
    Delivery,
    FulfillmentType,
    Invoice,
    InvoicePayment,
    InvoiceStatus,
    OrderItem,
    Pickup,
    Quotation,
    RentalOrder,
    RentalReturn,
    UserRole,
)
from rental_market.observability import increment_counter, record_event
from rental_market.services.audit_service import AuditService
from rental_market.services.email_service import EmailDeliveryError, EmailService
from rental_market.services.inventory_service import InventoryService
from rental_market.services.pricing import round_money
from rental_market.services.quotation_service import QuotationService
from rental_market.services.transactions import transactional
from rental_market.text import clean_text
from rental_market.timeutils import parse_datetime, to_storage, utcnow


class OrderService:
    """
    Orders created from paid quotations, and everything that follows:
    invoicing, invoice payments, pickup/delivery, returns and cancellation.

    Every status change is a compare-and-set on the order row, and each
    operation commits as a single transaction together with its ledger
    changes.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        quotation_service: Optional[QuotationService] = None,
        inventory_service: Optional[InventoryService] = None,
        audit_service: Optional[AuditService] = None,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.inventory_service = inventory_service or InventoryService(db_session)
        self.audit = audit_service or AuditService(db_session)
        self.quotation_service = quotation_service or QuotationService(
            db_session,
            config=config,
            inventory_service=self.inventory_service,
            audit_service=self.audit,
        )
        self.email_service = email_service or EmailService(config)

    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------
    def confirm_paid_quotation(
        self,
        quotation_id: int,
        payment_reference: Optional[str] = None,
    ) -> Optional[RentalOrder]:
        """
        Promote a paid SENT quotation to a CONFIRMED order.

        Snapshots the quotation lines and commercial terms onto the order
        and reserves stock for every line. Repeated confirmations for the
        same quotation are ignored and return None.
        """
        with transactional(self.db, self.logger, "confirm_paid_quotation"):
            quotation = self.quotation_service.load_locked(quotation_id)
            existing = self.db.query(RentalOrder).filter(RentalOrder.quotationID == quotation_id).first()
            if QuotationStatus(quotation.status) != QuotationStatus.SENT or existing is not None:
                increment_counter("payment_confirmations_ignored_total")
                self.logger.info(
                    "Payment confirmation for quotation %s ignored",
                    quotation_id,
                    extra={"status": QuotationStatus(quotation.status).value, "payment_reference": payment_reference},
                )
                return None

            self.quotation_service.apply_transition(
                quotation,
                QuotationAction.CONFIRM_PAYMENT,
                None,
                {"payment_reference": payment_reference},
            )
            totals = self.quotation_service.get_totals(quotation)
            order = RentalOrder(
                quotationID=quotation.quotationID,
                customerID=quotation.customerID,
                status=OrderStatus.CONFIRMED,
                fulfillment_type=quotation.fulfillment_type,
                delivery_charge=totals.delivery_charge,
                coupon_code=quotation.coupon.code if quotation.coupon else None,
                discount_amt=totals.discount_amt,
                items=[
                    OrderItem(
                        variantID=item.variantID,
                        quantity=item.quantity,
                        rental_start=item.rental_start,
                        rental_end=item.rental_end,
                        price=item.price,
                    )
                    for item in quotation.items
                ],
            )
            self.db.add(order)
            try:
                self.db.flush()
            except IntegrityError:
                raise InvalidStateTransition(
                    f"Quotation {quotation_id} has already been converted to an order"
                ) from None

            self.inventory_service.reserve_order_items(order)
            self.audit.record(
                None,
                "CREATE order",
                "RentalOrder",
                order.orderID,
                {"quotation_id": quotation_id, "total": totals.total, "payment_reference": payment_reference},
            )

        increment_counter("orders_created_total")
        record_event("order_created", {"order_id": order.orderID, "quotation_id": quotation_id})
        self.logger.info("Order %s created from quotation %s", order.orderID, quotation_id)
        self._notify_vendor_of_order(quotation, order)
        return order

    # ------------------------------------------------------------------
    # Invoicing
    # ------------------------------------------------------------------
    def create_invoice(self, actor: CurrentUser, order_id: int) -> Invoice:
        with transactional(self.db, self.logger, "create_invoice"):
            order = self._load_for_vendor(actor, order_id)
            ORDER_TRANSITIONS.next_status(OrderStatus(order.status), OrderAction.CREATE_INVOICE)
            if self.db.query(Invoice).filter(Invoice.orderID == order_id).first() is not None:
                raise InvalidStateTransition(f"An invoice already exists for order {order_id}")

            rental_amount = round_money(sum(item.line_total for item in order.items))
            security_deposit = 0.0
            delivery_charge = round_money(order.delivery_charge)
            invoice = Invoice(
                orderID=order_id,
                created_by_userID=actor.id,
                rental_amount=rental_amount,
                security_deposit=security_deposit,
                delivery_charge=delivery_charge,
                total_amount=round_money(rental_amount + security_deposit + delivery_charge),
                paid_amount=0,
                status=InvoiceStatus.DRAFT,
            )
            self.db.add(invoice)
            try:
                self.db.flush()
            except IntegrityError:
                raise InvalidStateTransition(f"An invoice already exists for order {order_id}") from None

            self.audit.record(
                actor.id,
                "CREATE invoice",
                "Invoice",
                invoice.invoiceID,
                {"order_id": order_id, "total_amount": float(invoice.total_amount)},
            )

        increment_counter("invoices_created_total")
        self.logger.info("Invoice %s created for order %s", invoice.invoiceID, order_id)
        return invoice

    def record_invoice_payment(
        self,
        actor: CurrentUser,
        invoice_id: int,
        amount: Any,
        external_reference: Optional[str] = None,
    ) -> Invoice:
        value = self._non_negative(amount, "Payment amount")
        if value <= 0:
            raise ValidationError("Payment amount must be positive")

        with transactional(self.db, self.logger, "record_invoice_payment"):
            invoice = (
                self.db.query(Invoice)
                .filter(Invoice.invoiceID == invoice_id)
                .populate_existing()
                .with_for_update()
                .first()
            )
            if invoice is None:
                raise NotFound(f"Invoice {invoice_id} not found")
            order = self._load_for_vendor(actor, invoice.orderID)
            if OrderStatus(order.status) == OrderStatus.CANCELLED:
                raise InvalidStateTransition("Cannot take payment for a cancelled order")
            if InvoiceStatus(invoice.status) in (InvoiceStatus.PAID, InvoiceStatus.REFUNDED):
                raise InvalidStateTransition(f"Invoice {invoice_id} is already {InvoiceStatus(invoice.status).value}")
            if value > invoice.balance_due:
                raise ValidationError(f"Payment exceeds the outstanding balance of {invoice.balance_due:.2f}")

            paid = round_money(float(invoice.paid_amount or 0) + value)
            invoice.paid_amount = paid
            invoice.status = (
                InvoiceStatus.PAID if paid >= round_money(invoice.total_amount) else InvoiceStatus.PARTIALLY_PAID
            )
            invoice.payments.append(
                InvoicePayment(amount=value, external_reference=external_reference, paid_at=to_storage(utcnow()))
            )
            self.audit.record(
                actor.id,
                "RECORD invoice payment",
                "Invoice",
                invoice_id,
                {"amount": value, "reference": external_reference},
            )

        increment_counter("invoice_payments_total")
        return invoice

    # ------------------------------------------------------------------
    # Fulfillment and returns
    # ------------------------------------------------------------------
    def record_fulfillment(
        self,
        actor: CurrentUser,
        order_id: int,
        method: Optional[FulfillmentType | str] = None,
        at: Any = None,
    ) -> RentalOrder:
        """Record pickup or delivery; the order becomes ACTIVE and its stock leaves with the customer."""
        happened_at = self._parse_moment(at, "fulfillment date") if at is not None else utcnow()

        with transactional(self.db, self.logger, "record_fulfillment"):
            order = self._load_for_vendor(actor, order_id)
            try:
                fulfillment = FulfillmentType(method or order.fulfillment_type)
            except ValueError:
                raise ValidationError(f"Unknown fulfillment type: {method}") from None

            self._advance(order, OrderAction.RECORD_FULFILLMENT, actor.id, {"method": fulfillment.value})
            if fulfillment == FulfillmentType.STORE_PICKUP:
                self.db.add(Pickup(orderID=order_id, handled_by_userID=actor.id, picked_at=to_storage(happened_at)))
            else:
                moment = to_storage(happened_at)
                self.db.add(
                    Delivery(orderID=order_id, handled_by_userID=actor.id, shipped_at=moment, delivered_at=moment)
                )
            try:
                self.db.flush()
            except IntegrityError:
                raise InvalidStateTransition(f"Fulfillment was already recorded for order {order_id}") from None

            self.inventory_service.hand_over_order(order)

        self._notify_customer(order)
        return order

    def record_return(
        self,
        actor: CurrentUser,
        order_id: int,
        returned_at: Any,
        late_fee: Any = 0,
        damage_fee: Any = 0,
        deposit_refunded: Any = 0,
    ) -> RentalReturn:
        """Close the rental; the order completes and its reserved stock is released."""
        moment = self._parse_moment(returned_at, "return date")
        late = self._non_negative(late_fee, "Late fee")
        damage = self._non_negative(damage_fee, "Damage fee")
        refunded = self._non_negative(deposit_refunded, "Deposit refund")

        with transactional(self.db, self.logger, "record_return"):
            order = self._load_for_vendor(actor, order_id)
            if self.db.query(RentalReturn).filter(RentalReturn.orderID == order_id).first() is not None:
                raise InvalidStateTransition(f"A return was already recorded for order {order_id}")

            self._advance(order, OrderAction.RECORD_RETURN, actor.id)
            rental_return = RentalReturn(
                orderID=order_id,
                handled_by_userID=actor.id,
                returned_at=to_storage(moment),
                late_fee=late,
                damage_fee=damage,
                deposit_refunded=refunded,
            )
            self.db.add(rental_return)
            try:
                self.db.flush()
            except IntegrityError:
                raise InvalidStateTransition(f"A return was already recorded for order {order_id}") from None

            released = self.inventory_service.release_order(order)
            self.audit.record(
                actor.id,
                "CREATE return",
                "RentalReturn",
                rental_return.returnID,
                {"order_id": order_id, "late_fee": late, "damage_fee": damage, "released": released},
            )

        increment_counter("returns_recorded_total")
        if late or damage:
            increment_counter("return_fees_total", amount=late + damage)
        self.logger.info("Return recorded for order %s", order_id, extra={"late_fee": late, "damage_fee": damage})
        self._notify_customer(order)
        return rental_return

    def cancel_order(self, actor: CurrentUser, order_id: int, reason: Optional[str] = None) -> RentalOrder:
        reason = clean_text(reason)
        with transactional(self.db, self.logger, "cancel_order"):
            order = self._load_for_vendor(actor, order_id)
            self._advance(order, OrderAction.CANCEL, actor.id, {"reason": reason})
            self.inventory_service.release_order(order)

        self.logger.info("Order %s cancelled", order_id, extra={"reason": reason})
        self._notify_customer(order)
        return order

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_order(self, actor: CurrentUser, order_id: int) -> RentalOrder:
        require_role(actor, UserRole.VENDOR, UserRole.CUSTOMER, UserRole.ADMIN)
        order = self.db.get(RentalOrder, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if actor.role == UserRole.VENDOR and order.vendorID != actor.id:
            raise Unauthorized("You do not have access to this order")
        if actor.role == UserRole.CUSTOMER and order.customerID != actor.id:
            raise Unauthorized("You do not have access to this order")
        return order

    def list_orders(
        self,
        actor: CurrentUser,
        status: Optional[OrderStatus | str] = None,
        page: int = 1,
    ) -> Dict[str, Any]:
        require_role(actor, UserRole.VENDOR, UserRole.CUSTOMER, UserRole.ADMIN)
        query = self.db.query(RentalOrder)
        if actor.role == UserRole.VENDOR:
            query = query.join(Quotation, RentalOrder.quotationID == Quotation.quotationID).filter(
                Quotation.vendorID == actor.id
            )
        elif actor.role == UserRole.CUSTOMER:
            query = query.filter(RentalOrder.customerID == actor.id)
        if status:
            try:
                query = query.filter(RentalOrder.status == OrderStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown order status: {status}") from None

        page = max(int(page or 1), 1)
        page_size = self.config.ORDER_HISTORY_PAGE_SIZE
        total = query.count()
        orders: List[RentalOrder] = (
            query.order_by(RentalOrder.orderID.desc()).offset((page - 1) * page_size).limit(page_size).all()
        )
        return {"orders": orders, "total": total, "page": page, "page_size": page_size}

    # ------------------------------------------------------------------
    # Helper methods
    # ------------------------------------------------------------------
    def _load_for_vendor(self, actor: CurrentUser, order_id: int) -> RentalOrder:
        require_role(actor, UserRole.VENDOR, UserRole.ADMIN)
        order = (
            self.db.query(RentalOrder)
            .filter(RentalOrder.orderID == order_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if actor.role == UserRole.VENDOR and order.vendorID != actor.id:
            raise Unauthorized("You can only manage your own orders")
        return order

    def _advance(
        self,
        order: RentalOrder,
        action: OrderAction,
        actor_id: Optional[int],
        details: Optional[Dict[str, Any]] = None,
    ) -> OrderStatus:
        current = OrderStatus(order.status)
        target = ORDER_TRANSITIONS.next_status(current, action)
        now = to_storage(utcnow())
        result = self.db.execute(
            update(RentalOrder)
            .where(RentalOrder.orderID == order.orderID, RentalOrder.status == current)
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                f"Order {order.orderID} changed while this request was processed; reload and retry"
            )
        set_committed_value(order, "status", target)
        set_committed_value(order, "updated_at", now)

        self.audit.record(actor_id, f"{action.value.upper()} order", "RentalOrder", order.orderID, details)
        increment_counter(
            "order_transitions_total",
            labels={"from_status": current.value, "to_status": target.value},
        )
        return target

    @staticmethod
    def _non_negative(value: Any, label: str) -> float:
        try:
            number = float(value if value is not None else 0)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} must be a number") from None
        if number < 0:
            raise ValidationError(f"{label} cannot be negative")
        return round_money(number)

    @staticmethod
    def _parse_moment(value: Any, label: str) -> datetime:
        parsed = parse_datetime(value)
        if parsed is None:
            raise ValidationError(f"Invalid {label}")
        return parsed

    def _notify_vendor_of_order(self, quotation: Quotation, order: RentalOrder) -> None:
        # Best effort: the order stands even if the email does not go out
        try:
            self.email_service.send_order_placed(
                to=quotation.vendor.email,
                vendor_name=quotation.vendor.display_name,
                order_id=order.orderID,
                customer_name=quotation.customer.display_name,
            )
        except EmailDeliveryError as exc:
            self.logger.warning("Order %s notification failed: %s", order.orderID, exc)

    def _notify_customer(self, order: RentalOrder) -> None:
        try:
            self.email_service.send_order_status(
                to=order.customer.email,
                customer_name=order.customer.display_name,
                order_id=order.orderID,
                status=OrderStatus(order.status).value,
            )
        except EmailDeliveryError as exc:
            self.logger.warning("Order %s status email failed: %s", order.orderID, exc)
