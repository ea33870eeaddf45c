from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from rental_market.errors import NotFound, OverbookedError, ValidationError
from rental_market.lifecycle import (
    HOLDING_RESERVATION_STATUSES,
    ReservationAction,
    ReservationStatus,
)
from rental_market.models import ProductVariant, RentalOrder, Reservation
from rental_market.observability import increment_counter, record_event, set_gauge
from rental_market.services.transactions import transactional
from rental_market.timeutils import parse_datetime, to_storage


class InventoryService:
    """
    Reservation ledger: per-variant stock held against rental windows.

    For any variant and any instant, the quantity held by RESERVED and
    WITH_CUSTOMER reservations never exceeds the variant's stock. The
    overlap check and the insert run while the variant row is write-locked,
    so concurrent reservers of the same variant are serialized.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def reserve(
        self,
        variant_id: int,
        start_date: datetime,
        end_date: datetime,
        quantity: int,
        order_id: Optional[int] = None,
    ) -> Reservation:
        """Hold stock in its own transaction; raises OverbookedError when short."""
        with transactional(self.db, self.logger, "reserve"):
            reservation = self.reserve_in_transaction(
                variant_id, start_date, end_date, quantity, order_id
            )
        return reservation

    def reserve_in_transaction(
        self,
        variant_id: int,
        start_date: datetime,
        end_date: datetime,
        quantity: int,
        order_id: Optional[int] = None,
    ) -> Reservation:
        """Hold stock inside the caller's transaction; the caller commits."""
        start, end = self._validate_window(start_date, end_date)
        if quantity is None or int(quantity) < 1:
            raise ValidationError("Reserved quantity must be at least 1")

        variant = self._lock_variant(variant_id)
        held = self._held_quantity(variant_id, start, end)
        if held + quantity > variant.quantity:
            increment_counter("reservations_overbooked_total")
            raise OverbookedError(
                f"Only {max(variant.quantity - held, 0)} unit(s) of variant {variant_id} "
                f"are available for the requested dates"
            )

        reservation = Reservation(
            variantID=variant_id,
            orderID=order_id,
            start_date=start,
            end_date=end,
            quantity=quantity,
            available_qty=variant.quantity - held - quantity,
            status=ReservationStatus.RESERVED,
        )
        self.db.add(reservation)
        # Later overlap sums in this transaction must see this row
        self.db.flush()

        increment_counter("reservations_created_total")
        set_gauge("variant_units_free_in_window", reservation.available_qty, labels={"variant_id": variant_id})
        self.logger.info(
            "Reserved %d unit(s) of variant %d",
            quantity,
            variant_id,
            extra={"order_id": order_id, "reservation_id": reservation.reservationID},
        )
        return reservation

    def available_quantity(
        self,
        variant_id: int,
        start_date: datetime,
        end_date: datetime,
    ) -> int:
        start, end = self._validate_window(start_date, end_date)
        variant = self.db.get(ProductVariant, variant_id)
        if variant is None:
            raise NotFound(f"Variant {variant_id} not found")
        return max(variant.quantity - self._held_quantity(variant_id, start, end), 0)

    def ensure_available(
        self,
        variant_id: int,
        start_date: datetime,
        end_date: datetime,
        quantity: int,
    ) -> None:
        """Advisory check used while quoting; nothing is held."""
        available = self.available_quantity(variant_id, start_date, end_date)
        if quantity > available:
            raise OverbookedError(
                f"Only {available} unit(s) of variant {variant_id} are available for the requested dates"
            )

    def reserve_order_items(self, order: RentalOrder) -> List[Reservation]:
        # Fixed variant order keeps lock acquisition consistent across orders
        reservations = []
        for item in sorted(order.items, key=lambda i: (i.variantID, i.orderItemID or 0)):
            reservations.append(
                self.reserve_in_transaction(
                    item.variantID,
                    item.rental_start,
                    item.rental_end,
                    item.quantity,
                    order_id=order.orderID,
                )
            )
        return reservations

    def hand_over_order(self, order: RentalOrder) -> int:
        """Mark the order's held stock as out with the customer."""
        return self._apply_to_order(order, ReservationAction.HAND_OVER, {ReservationStatus.RESERVED})

    def release_order(self, order: RentalOrder) -> int:
        """Put the order's stock back into the pool."""
        return self._apply_to_order(order, ReservationAction.RELEASE, set(HOLDING_RESERVATION_STATUSES))

    # ------------------------------------------------------------------
    # Helper methods
    # ------------------------------------------------------------------
    def _apply_to_order(self, order: RentalOrder, action: ReservationAction, from_statuses: set) -> int:
        reservations = (
            self.db.query(Reservation)
            .filter(Reservation.orderID == order.orderID, Reservation.status.in_(list(from_statuses)))
            .with_for_update()
            .all()
        )
        for reservation in reservations:
            reservation.transition_to(action)
        changed = len(reservations)

        if changed:
            record_event(
                "reservations_updated",
                {"order_id": order.orderID, "action": action.value, "count": changed},
            )
            self.logger.info(
                "Applied '%s' to %d reservation(s) of order %s",
                action.value,
                changed,
                order.orderID,
            )
        return changed

    def _lock_variant(self, variant_id: int) -> ProductVariant:
        # An UPDATE takes the row lock on PostgreSQL and the write lock on SQLite
        result = self.db.execute(
            update(ProductVariant)
            .where(ProductVariant.variantID == variant_id)
            .values(lock_version=ProductVariant.lock_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound(f"Variant {variant_id} not found")
        return self.db.get(ProductVariant, variant_id, populate_existing=True)

    def _held_quantity(self, variant_id: int, start: datetime, end: datetime) -> int:
        held = (
            self.db.query(func.coalesce(func.sum(Reservation.quantity), 0))
            .filter(
                Reservation.variantID == variant_id,
                Reservation.status.in_(HOLDING_RESERVATION_STATUSES),
                Reservation.start_date < end,
                Reservation.end_date > start,
            )
            .scalar()
        )
        return int(held or 0)

    @staticmethod
    def _validate_window(start_date: datetime, end_date: datetime) -> tuple[datetime, datetime]:
        start, end = parse_datetime(start_date), parse_datetime(end_date)
        if start is None or end is None:
            raise ValidationError("Rental start and end must be valid dates")
        start, end = to_storage(start), to_storage(end)
        if end <= start:
            raise ValidationError("Rental end must be after rental start")
        return start, end
