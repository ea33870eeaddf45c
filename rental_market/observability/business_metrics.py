"""Read-only platform analytics for the super-admin dashboard."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func
from sqlalchemy.orm import Session

from rental_market.config import Config
from rental_market.lifecycle import OrderStatus, QuotationStatus
from rental_market.models import Invoice, Quotation, RentalOrder, RentalReturn

START_YEAR = 2025
END_YEAR = 2050
try:
    _LOCAL_TZ = ZoneInfo(getattr(Config, "DEFAULT_TIMEZONE", "UTC"))
except ZoneInfoNotFoundError:
    _LOCAL_TZ = timezone.utc


@dataclass(frozen=True)
class QuarterWindow:
    key: str
    label: str
    year: int
    quarter: int
    start: datetime
    end: datetime


def generate_quarter_windows() -> List[QuarterWindow]:
    """Generate every quarter between START_YEAR and END_YEAR inclusive."""
    tz = timezone.utc
    windows: List[QuarterWindow] = []
    for year in range(START_YEAR, END_YEAR + 1):
        for quarter in range(1, 5):
            start_month = (quarter - 1) * 3 + 1
            start = datetime(year, start_month, 1, tzinfo=tz)
            if quarter == 4:
                end = datetime(year + 1, 1, 1, tzinfo=tz)
            else:
                end = datetime(year, start_month + 3, 1, tzinfo=tz)
            windows.append(
                QuarterWindow(
                    key=f"{year}-Q{quarter}",
                    label=f"Q{quarter} {year}",
                    year=year,
                    quarter=quarter,
                    start=start,
                    end=end,
                )
            )
    return windows


def select_quarter_window(
    windows: List[QuarterWindow],
    selected_key: Optional[str],
    now: Optional[datetime] = None,
) -> QuarterWindow:
    """Return the requested quarter or fall back to the quarter that contains 'now'."""
    if selected_key:
        for window in windows:
            if window.key == selected_key:
                return window

    now = now or datetime.now(timezone.utc)
    for window in windows:
        if window.start <= now < window.end:
            return window
    return windows[-1]


def compute_orders_metrics(session: Session, window: QuarterWindow) -> Dict[str, float]:
    rows = (
        session.query(RentalOrder.created_at)
        .filter(RentalOrder.created_at >= _naive(window.start))
        .filter(RentalOrder.created_at < _naive(window.end))
        .filter(RentalOrder.status != OrderStatus.CANCELLED)
        .all()
    )
    timestamps = [_to_local_timezone(row[0]) for row in rows if row[0] is not None]
    return _build_series_metrics(timestamps, window)


def compute_revenue_summary(session: Session, window: QuarterWindow) -> Dict[str, float]:
    """Invoiced and collected amounts for invoices created inside the window."""
    invoiced, collected, count = (
        session.query(
            func.coalesce(func.sum(Invoice.total_amount), 0),
            func.coalesce(func.sum(Invoice.paid_amount), 0),
            func.count(Invoice.invoiceID),
        )
        .filter(Invoice.created_at >= _naive(window.start))
        .filter(Invoice.created_at < _naive(window.end))
        .one()
    )
    return {
        "invoice_count": int(count),
        "invoiced": round(float(invoiced), 2),
        "collected": round(float(collected), 2),
        "outstanding": round(float(invoiced) - float(collected), 2),
    }


def compute_return_summary(session: Session, window: QuarterWindow) -> Dict[str, float]:
    """Return volume, fee totals, and average rental length for the window."""
    returns = (
        session.query(RentalReturn)
        .filter(RentalReturn.returned_at >= _naive(window.start))
        .filter(RentalReturn.returned_at < _naive(window.end))
        .all()
    )
    late_fees = sum(float(r.late_fee or 0) for r in returns)
    damage_fees = sum(float(r.damage_fee or 0) for r in returns)
    deposits = sum(float(r.deposit_refunded or 0) for r in returns)

    durations: List[float] = []
    for rental_return in returns:
        order = rental_return.order
        if order is None or order.created_at is None:
            continue
        started = _to_local_timezone(order.created_at)
        ended = _to_local_timezone(rental_return.returned_at)
        durations.append((ended - started).total_seconds())

    avg_rental_days = (sum(durations) / len(durations) / 86400) if durations else 0.0

    return {
        "count": len(returns),
        "late_fees": round(late_fees, 2),
        "damage_fees": round(damage_fees, 2),
        "deposits_refunded": round(deposits, 2),
        "avg_rental_days": avg_rental_days,
    }


def compute_quotation_funnel(session: Session) -> Dict[str, int]:
    rows = (
        session.query(Quotation.status, func.count(Quotation.quotationID))
        .group_by(Quotation.status)
        .all()
    )
    funnel = {status.value: 0 for status in QuotationStatus}
    for status, count in rows:
        key = status.value if hasattr(status, "value") else str(status)
        funnel[key] = int(count)
    return funnel


def _naive(value: datetime) -> datetime:
    # Stored timestamps are naive UTC
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_local_timezone(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(_LOCAL_TZ)


def _build_series_metrics(timestamps: List[datetime], window: QuarterWindow) -> Dict[str, float]:
    counts: Counter = Counter(ts.date() for ts in timestamps)

    day = window.start
    series: List[Dict[str, float]] = []
    while day < window.end:
        date_key = day.astimezone(_LOCAL_TZ).date()
        series.append({"date": date_key.isoformat(), "count": counts.get(date_key, 0)})
        day += timedelta(days=1)

    total = sum(point["count"] for point in series)
    series_max = max((point["count"] for point in series), default=0)
    mean_per_day = total / len(series) if series else 0.0

    return {
        "total": total,
        "series": series,
        "series_max": series_max,
        "mean_per_day": mean_per_day,
    }


__all__ = [
    "QuarterWindow",
    "generate_quarter_windows",
    "select_quarter_window",
    "compute_orders_metrics",
    "compute_revenue_summary",
    "compute_return_summary",
    "compute_quotation_funnel",
]
