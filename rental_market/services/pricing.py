"""Pure pricing functions: quotation totals and rental-period pricing.

Nothing here touches the database, so the same inputs always give the same
totals. Invoices and payment links re-derive amounts through these helpers
instead of trusting previously stored figures.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from rental_market.errors import ValidationError
from rental_market.models import CouponType, PeriodUnit


@dataclass(frozen=True)
class QuotationTotals:
    subtotal: float
    discount_amt: float
    delivery_charge: float
    total: float

    def to_dict(self) -> dict:
        return {
            "subtotal": round_money(self.subtotal),
            "discount_amt": round_money(self.discount_amt),
            "delivery_charge": round_money(self.delivery_charge),
            "total": round_money(self.total),
        }


@dataclass(frozen=True)
class PeriodPrice:
    unit: PeriodUnit
    duration: int
    price: float


def round_money(value: float | Decimal | None) -> float:
    return round(float(value or 0), 2)


def _read(source: Any, name: str, default: Any = None) -> Any:
    if isinstance(source, dict):
        return source.get(name, default)
    return getattr(source, name, default)


def compute_subtotal(items: Iterable[Any]) -> float:
    return sum(float(_read(item, "quantity", 0)) * float(_read(item, "price", 0)) for item in items)


def compute_discount(subtotal: float, coupon: Any | None) -> float:
    """Discount for the coupon; never negative and never above the subtotal."""
    if coupon is None or subtotal <= 0:
        return 0.0

    coupon_type = CouponType(_read(coupon, "type"))
    value = float(_read(coupon, "value", 0))
    if coupon_type == CouponType.FLAT:
        discount = min(value, subtotal)
    else:
        discount = subtotal * value / 100
        max_discount = _read(coupon, "max_discount", _read(coupon, "maxDiscount"))
        if max_discount is not None:
            discount = min(discount, float(max_discount))
        discount = min(discount, subtotal)
    return max(discount, 0.0)


def compute_totals(
    items: Iterable[Any],
    coupon: Any | None,
    delivery_charge: float | Decimal | None,
) -> QuotationTotals:
    """Subtotal, coupon discount, delivery charge and grand total for line items.

    Items and coupons may be ORM rows or plain dicts with the same field names.
    """
    charge = float(delivery_charge or 0)
    if charge < 0:
        raise ValidationError("Delivery charge cannot be negative")

    subtotal = compute_subtotal(items)
    discount_amt = compute_discount(subtotal, coupon)
    total = max(0.0, subtotal - discount_amt) + charge
    return QuotationTotals(
        subtotal=subtotal,
        discount_amt=discount_amt,
        delivery_charge=charge,
        total=total,
    )


def period_prices_for(variant: Any) -> list[PeriodPrice]:
    return [
        PeriodPrice(
            unit=PeriodUnit(price.period.unit),
            duration=int(price.period.duration or 1),
            price=float(price.price),
        )
        for price in (variant.prices or [])
        if price.period is not None
    ]


def compute_rental_price(
    prices: Sequence[PeriodPrice],
    rental_start: datetime,
    rental_end: datetime,
) -> float:
    """Per-unit price of renting for [rental_start, rental_end).

    Prefers the single-day rate, then hourly for sub-day rentals, then weekly
    and monthly rates, and finally whatever rate exists.
    """
    if rental_end <= rental_start:
        raise ValidationError("Rental end must be after rental start")
    if not prices:
        return 0.0

    hours = (rental_end - rental_start).total_seconds() / 3600
    days = hours / 24

    def single(unit: PeriodUnit) -> Optional[PeriodPrice]:
        return next((p for p in prices if p.unit == unit and p.duration == 1), None)

    daily = single(PeriodUnit.DAY)
    hourly = single(PeriodUnit.HOUR)
    weekly = single(PeriodUnit.WEEK)
    monthly = single(PeriodUnit.MONTH)

    if days >= 1 and daily:
        return daily.price * math.ceil(days)
    if hours < 24 and hourly:
        return hourly.price * math.ceil(hours)
    if weekly and days >= 1:
        return weekly.price * max(1, math.ceil(days / 7))
    if monthly and days >= 1:
        return monthly.price * max(1, math.ceil(days / 30))

    fallback = daily or hourly or weekly or monthly or prices[0]
    if fallback.unit == PeriodUnit.HOUR:
        return fallback.price * math.ceil(hours)
    return fallback.price * math.ceil(days)
