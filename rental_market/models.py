# rental_market/models.py
from enum import Enum
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    Index,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Single shared Base so every table lives in the same metadata
from rental_market.database import Base
from rental_market.lifecycle import (
    QuotationStatus,
    OrderStatus,
    ReservationStatus,
    ReservationAction,
    RESERVATION_TRANSITIONS,
)
from rental_market.timeutils import as_utc, to_storage, utcnow


def _utcnow() -> datetime:
    return to_storage(utcnow())


def _enum_column(enum_cls, name: str, **kwargs) -> Column:
    return Column(
        SAEnum(enum_cls, name=name, native_enum=False, validate_strings=True),
        **kwargs,
    )


class UserRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    VENDOR = "VENDOR"
    ADMIN = "ADMIN"


class CouponType(str, Enum):
    FLAT = "FLAT"
    PERCENTAGE = "PERCENTAGE"


class DeliveryChargeType(str, Enum):
    FLAT = "FLAT"
    PER_KM = "PER_KM"
    FREE = "FREE"


class FulfillmentType(str, Enum):
    STORE_PICKUP = "STORE_PICKUP"
    DELIVERY = "DELIVERY"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PeriodUnit(str, Enum):
    HOUR = "HOUR"
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    company_name = Column(String(255))
    role = _enum_column(UserRole, "user_role", default=UserRole.CUSTOMER, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    delivery_config = relationship("VendorDeliveryConfig", uselist=False, back_populates="vendor")

    @property
    def display_name(self) -> str:
        return self.company_name or self.name


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    vendorID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_published = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)

    vendor = relationship("User")
    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")


class ProductVariant(Base):
    __tablename__ = 'ProductVariant'
    variantID = Column(Integer, primary_key=True, autoincrement=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    sku = Column(String(120))
    quantity = Column(Integer, nullable=False, default=0)
    # Bumped before every ledger write so reservers of one variant serialize
    lock_version = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")
    prices = relationship("RentalPrice", back_populates="variant", cascade="all, delete-orphan")

    @property
    def vendorID(self):
        return self.product.vendorID if self.product else None


class RentalPeriod(Base):
    __tablename__ = 'RentalPeriod'
    periodID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    unit = _enum_column(PeriodUnit, "period_unit", nullable=False)
    duration = Column(Integer, nullable=False, default=1)


class RentalPrice(Base):
    __tablename__ = 'RentalPrice'
    rentalPriceID = Column(Integer, primary_key=True, autoincrement=True)
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'), nullable=False)
    periodID = Column(Integer, ForeignKey('RentalPeriod.periodID'), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)

    variant = relationship("ProductVariant", back_populates="prices")
    period = relationship("RentalPeriod")


class Coupon(Base):
    __tablename__ = 'Coupon'
    couponID = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), unique=True, nullable=False)
    type = _enum_column(CouponType, "coupon_type", nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    max_discount = Column(Numeric(12, 2))
    valid_from = Column(DateTime, nullable=False)
    valid_till = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def is_redeemable(self, moment: datetime) -> bool:
        if not self.is_active:
            return False
        return as_utc(self.valid_from) <= as_utc(moment) <= as_utc(self.valid_till)


class VendorDeliveryConfig(Base):
    __tablename__ = 'VendorDeliveryConfig'
    configID = Column(Integer, primary_key=True, autoincrement=True)
    vendorID = Column(Integer, ForeignKey('User.userID'), unique=True, nullable=False)
    is_delivery_enabled = Column(Boolean, default=False, nullable=False)
    charge_type = _enum_column(DeliveryChargeType, "delivery_charge_type", default=DeliveryChargeType.FLAT, nullable=False)
    flat_charge = Column(Numeric(12, 2))
    rate_per_km = Column(Numeric(12, 2))
    free_above_amount = Column(Numeric(12, 2))
    max_delivery_km = Column(Numeric(10, 2))
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    vendor = relationship("User", back_populates="delivery_config")


class Quotation(Base):
    __tablename__ = 'Quotation'
    quotationID = Column(Integer, primary_key=True, autoincrement=True)
    customerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    vendorID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    status = _enum_column(QuotationStatus, "quotation_status", default=QuotationStatus.DRAFT, nullable=False)
    couponID = Column(Integer, ForeignKey('Coupon.couponID'))
    delivery_charge = Column(Numeric(12, 2), default=0, nullable=False)
    fulfillment_type = _enum_column(FulfillmentType, "fulfillment_type", default=FulfillmentType.DELIVERY, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    customer = relationship("User", foreign_keys=[customerID])
    vendor = relationship("User", foreign_keys=[vendorID])
    coupon = relationship("Coupon")
    items = relationship(
        "QuotationItem",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="QuotationItem.quotationItemID",
    )
    order = relationship("RentalOrder", uselist=False, back_populates="quotation")
    payment_link_log = relationship("QuotationPaymentLinkLog", uselist=False, back_populates="quotation")


class QuotationItem(Base):
    __tablename__ = 'QuotationItem'
    quotationItemID = Column(Integer, primary_key=True, autoincrement=True)
    quotationID = Column(Integer, ForeignKey('Quotation.quotationID', ondelete="CASCADE"), nullable=False)
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    rental_start = Column(DateTime, nullable=False)
    rental_end = Column(DateTime, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)

    quotation = relationship("Quotation", back_populates="items")
    variant = relationship("ProductVariant")


class QuotationPaymentLinkLog(Base):
    __tablename__ = 'QuotationPaymentLinkLog'
    logID = Column(Integer, primary_key=True, autoincrement=True)
    quotationID = Column(Integer, ForeignKey('Quotation.quotationID'), unique=True, nullable=False)
    url = Column(String(1024), nullable=False)
    sent_to = Column(String(255), nullable=False)
    sent_by_userID = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=_utcnow)

    quotation = relationship("Quotation", back_populates="payment_link_log")


class RentalOrder(Base):
    __tablename__ = 'RentalOrder'
    orderID = Column(Integer, primary_key=True, autoincrement=True)
    quotationID = Column(Integer, ForeignKey('Quotation.quotationID'), unique=True, nullable=False)
    customerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    status = _enum_column(OrderStatus, "order_status", default=OrderStatus.CONFIRMED, nullable=False)
    fulfillment_type = _enum_column(FulfillmentType, "order_fulfillment_type", default=FulfillmentType.DELIVERY, nullable=False)
    delivery_charge = Column(Numeric(12, 2), default=0, nullable=False)
    coupon_code = Column(String(64))
    discount_amt = Column(Numeric(12, 2), default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    quotation = relationship("Quotation", back_populates="order")
    customer = relationship("User")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.orderItemID",
    )
    invoice = relationship("Invoice", uselist=False, back_populates="order")
    rental_return = relationship("RentalReturn", uselist=False, back_populates="order")
    pickup = relationship("Pickup", uselist=False, back_populates="order")
    delivery = relationship("Delivery", uselist=False, back_populates="order")
    reservations = relationship("Reservation", back_populates="order")

    @property
    def vendorID(self):
        return self.quotation.vendorID if self.quotation else None


class OrderItem(Base):
    """Copy of a quotation line frozen at confirmation time."""

    __tablename__ = 'OrderItem'
    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('RentalOrder.orderID', ondelete="CASCADE"), nullable=False)
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    rental_start = Column(DateTime, nullable=False)
    rental_end = Column(DateTime, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)

    order = relationship("RentalOrder", back_populates="items")
    variant = relationship("ProductVariant")

    @property
    def line_total(self) -> float:
        return float(self.price) * self.quantity


class Invoice(Base):
    __tablename__ = 'Invoice'
    invoiceID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('RentalOrder.orderID'), unique=True, nullable=False)
    created_by_userID = Column(Integer, ForeignKey('User.userID'))
    rental_amount = Column(Numeric(12, 2), nullable=False)
    security_deposit = Column(Numeric(12, 2), default=0, nullable=False)
    delivery_charge = Column(Numeric(12, 2), default=0, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), default=0, nullable=False)
    status = _enum_column(InvoiceStatus, "invoice_status", default=InvoiceStatus.DRAFT, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    order = relationship("RentalOrder", back_populates="invoice")
    payments = relationship("InvoicePayment", back_populates="invoice", cascade="all, delete-orphan")

    @property
    def balance_due(self) -> float:
        return round(max(float(self.total_amount) - float(self.paid_amount or 0), 0.0), 2)


class InvoicePayment(Base):
    __tablename__ = 'InvoicePayment'
    paymentID = Column(Integer, primary_key=True, autoincrement=True)
    invoiceID = Column(Integer, ForeignKey('Invoice.invoiceID'), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    external_reference = Column(String(255))
    paid_at = Column(DateTime, default=_utcnow)

    invoice = relationship("Invoice", back_populates="payments")


class RentalReturn(Base):
    __tablename__ = 'RentalReturn'
    returnID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('RentalOrder.orderID'), unique=True, nullable=False)
    handled_by_userID = Column(Integer, ForeignKey('User.userID'))
    returned_at = Column(DateTime, nullable=False)
    late_fee = Column(Numeric(12, 2), default=0, nullable=False)
    damage_fee = Column(Numeric(12, 2), default=0, nullable=False)
    deposit_refunded = Column(Numeric(12, 2), default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    order = relationship("RentalOrder", back_populates="rental_return")

    @property
    def total_fees(self) -> float:
        return round(float(self.late_fee or 0) + float(self.damage_fee or 0), 2)


class Pickup(Base):
    __tablename__ = 'Pickup'
    pickupID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('RentalOrder.orderID'), unique=True, nullable=False)
    handled_by_userID = Column(Integer, ForeignKey('User.userID'))
    picked_at = Column(DateTime, nullable=False)

    order = relationship("RentalOrder", back_populates="pickup")


class Delivery(Base):
    __tablename__ = 'Delivery'
    deliveryID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('RentalOrder.orderID'), unique=True, nullable=False)
    handled_by_userID = Column(Integer, ForeignKey('User.userID'))
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime, nullable=False)

    order = relationship("RentalOrder", back_populates="delivery")


class Reservation(Base):
    __tablename__ = 'Reservation'
    __table_args__ = (
        Index("ix_reservation_variant_window", "variantID", "start_date", "end_date"),
    )

    reservationID = Column(Integer, primary_key=True, autoincrement=True)
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'), nullable=False)
    orderID = Column(Integer, ForeignKey('RentalOrder.orderID'))
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    quantity = Column(Integer, nullable=False)
    available_qty = Column(Integer, nullable=False)
    status = _enum_column(ReservationStatus, "reservation_status", default=ReservationStatus.RESERVED, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    order = relationship("RentalOrder", back_populates="reservations")
    variant = relationship("ProductVariant")

    def transition_to(self, action: ReservationAction) -> None:
        self.status = RESERVATION_TRANSITIONS.next_status(ReservationStatus(self.status), action)


class ActivityLog(Base):
    __tablename__ = 'ActivityLog'
    activityID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'))
    action = Column(String(100), nullable=False)
    entity = Column(String(50), nullable=False)
    entity_id = Column(Integer)
    details = Column(Text)  # JSON
    timestamp = Column(DateTime, default=_utcnow)

    user = relationship("User")
