"""Explicit (status, action) -> next status tables for every aggregate."""
from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Tuple

from rental_market.errors import InvalidStateTransition


class QuotationStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class QuotationAction(str, Enum):
    ADD_ITEM = "add item"
    UPDATE_ITEM = "update item"
    DELETE_ITEM = "delete item"
    SEND = "send"
    APPLY_COUPON = "apply coupon"
    REMOVE_COUPON = "remove coupon"
    UPDATE_DELIVERY_CHARGE = "update delivery charge"
    CREATE_PAYMENT_LINK = "create payment link"
    CONFIRM_PAYMENT = "confirm payment"
    CANCEL = "cancel"


class OrderStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OrderAction(str, Enum):
    CREATE_INVOICE = "create invoice"
    RECORD_FULFILLMENT = "record fulfillment"
    RECORD_RETURN = "record return"
    CANCEL = "cancel"


class ReservationStatus(str, Enum):
    RESERVED = "RESERVED"
    WITH_CUSTOMER = "WITH_CUSTOMER"
    AVAILABLE = "AVAILABLE"


class ReservationAction(str, Enum):
    HAND_OVER = "hand over"
    RELEASE = "release"


class TransitionTable:
    """Maps (current status, action) to the status after the action."""

    def __init__(self, entity: str, transitions: Dict[Tuple[Enum, Enum], Enum]) -> None:
        self.entity = entity
        self._transitions = dict(transitions)

    def can_apply(self, current: Enum, action: Enum) -> bool:
        return (current, action) in self._transitions

    def next_status(self, current: Enum, action: Enum) -> Enum:
        try:
            return self._transitions[(current, action)]
        except KeyError:
            raise InvalidStateTransition(
                f"Cannot {_label(action)} {self.entity.lower()} in status {_label(current)}"
            ) from None

    def allowed_actions(self, current: Enum) -> Iterable[Enum]:
        return [action for (status, action) in self._transitions if status == current]


def _label(value: Enum | str) -> str:
    return value.value if isinstance(value, Enum) else str(value)


_Q = QuotationStatus
_QA = QuotationAction

QUOTATION_TRANSITIONS = TransitionTable(
    "Quotation",
    {
        (_Q.DRAFT, _QA.ADD_ITEM): _Q.DRAFT,
        (_Q.DRAFT, _QA.UPDATE_ITEM): _Q.DRAFT,
        (_Q.DRAFT, _QA.DELETE_ITEM): _Q.DRAFT,
        (_Q.DRAFT, _QA.SEND): _Q.SENT,
        (_Q.DRAFT, _QA.CANCEL): _Q.CANCELLED,
        (_Q.SENT, _QA.APPLY_COUPON): _Q.SENT,
        (_Q.SENT, _QA.REMOVE_COUPON): _Q.SENT,
        (_Q.SENT, _QA.UPDATE_DELIVERY_CHARGE): _Q.SENT,
        (_Q.SENT, _QA.CREATE_PAYMENT_LINK): _Q.SENT,
        (_Q.SENT, _QA.CONFIRM_PAYMENT): _Q.CONFIRMED,
        (_Q.SENT, _QA.CANCEL): _Q.CANCELLED,
    },
)

_O = OrderStatus
_OA = OrderAction

ORDER_TRANSITIONS = TransitionTable(
    "Order",
    {
        (_O.CONFIRMED, _OA.CREATE_INVOICE): _O.CONFIRMED,
        (_O.ACTIVE, _OA.CREATE_INVOICE): _O.ACTIVE,
        (_O.COMPLETED, _OA.CREATE_INVOICE): _O.COMPLETED,
        (_O.CONFIRMED, _OA.RECORD_FULFILLMENT): _O.ACTIVE,
        (_O.CONFIRMED, _OA.RECORD_RETURN): _O.COMPLETED,
        (_O.ACTIVE, _OA.RECORD_RETURN): _O.COMPLETED,
        (_O.CONFIRMED, _OA.CANCEL): _O.CANCELLED,
    },
)

_R = ReservationStatus
_RA = ReservationAction

RESERVATION_TRANSITIONS = TransitionTable(
    "Reservation",
    {
        (_R.RESERVED, _RA.HAND_OVER): _R.WITH_CUSTOMER,
        (_R.RESERVED, _RA.RELEASE): _R.AVAILABLE,
        (_R.WITH_CUSTOMER, _RA.RELEASE): _R.AVAILABLE,
    },
)

# Statuses whose quantity still counts against variant stock
HOLDING_RESERVATION_STATUSES = (_R.RESERVED, _R.WITH_CUSTOMER)
