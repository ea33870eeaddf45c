from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from rental_market.auth import CurrentUser, require_role
from rental_market.errors import ValidationError
from rental_market.models import DeliveryChargeType, User, UserRole, VendorDeliveryConfig
from rental_market.services.audit_service import AuditService
from rental_market.services.pricing import compute_subtotal, round_money
from rental_market.services.transactions import transactional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VendorDeliveryQuote:
    vendor_id: int
    vendor_name: str
    charge: Optional[float]
    distance_km: Optional[float]

    @property
    def delivery_available(self) -> bool:
        return self.charge is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "charge": self.charge,
            "distance_km": self.distance_km,
            "delivery_available": self.delivery_available,
        }


def _qualifies_for_free_delivery(config: Any, order_subtotal: float) -> bool:
    free_above = config.free_above_amount
    return free_above is not None and order_subtotal >= float(free_above)


def validate_distance(distance_km: Any) -> float:
    try:
        km = float(distance_km)
    except (TypeError, ValueError):
        raise ValidationError("Delivery distance must be a number") from None
    if not math.isfinite(km) or km < 0:
        raise ValidationError("Delivery distance must be a non-negative number of kilometres")
    return km


def compute_charge(
    config: Optional[Any],
    order_subtotal: float,
    distance_km: Optional[float] = None,
) -> Optional[float]:
    """Delivery charge for one vendor's share of an order.

    Returns None when the vendor does not deliver; the caller then only offers
    store pickup.
    """
    if config is None or not config.is_delivery_enabled:
        return None

    charge_type = DeliveryChargeType(config.charge_type)
    if charge_type == DeliveryChargeType.FREE:
        return 0.0

    if charge_type == DeliveryChargeType.FLAT:
        if config.flat_charge is None:
            return 0.0
        charge = float(config.flat_charge)
    else:
        if config.rate_per_km is None:
            return 0.0
        if distance_km is None:
            logger.warning(
                "No distance available for per-km delivery; charging nothing",
                extra={"vendor_id": config.vendorID},
            )
            return 0.0
        capped_km = validate_distance(distance_km)
        if config.max_delivery_km is not None:
            capped_km = min(capped_km, float(config.max_delivery_km))
        charge = float(config.rate_per_km) * capped_km

    if _qualifies_for_free_delivery(config, order_subtotal):
        return 0.0
    return charge


class DeliveryService:
    """Vendor delivery settings and per-vendor delivery quotes for a cart."""

    def __init__(self, db_session: Session, audit_service: Optional[AuditService] = None) -> None:
        self.db = db_session
        self.logger = logger
        self.audit = audit_service or AuditService(db_session)

    def get_config(self, vendor_id: int) -> Optional[VendorDeliveryConfig]:
        return self.db.query(VendorDeliveryConfig).filter_by(vendorID=vendor_id).first()

    def save_config(
        self,
        actor: CurrentUser,
        *,
        is_delivery_enabled: bool,
        charge_type: DeliveryChargeType | str,
        flat_charge: Optional[float] = None,
        rate_per_km: Optional[float] = None,
        free_above_amount: Optional[float] = None,
        max_delivery_km: Optional[float] = None,
    ) -> VendorDeliveryConfig:
        require_role(actor, UserRole.VENDOR)
        try:
            charge_type_enum = DeliveryChargeType(charge_type)
        except ValueError:
            raise ValidationError(f"Unknown delivery charge type: {charge_type}") from None

        amounts = {
            "flat charge": flat_charge,
            "rate per km": rate_per_km,
            "free-above amount": free_above_amount,
            "max delivery distance": max_delivery_km,
        }
        for label, amount in amounts.items():
            if amount is not None and float(amount) < 0:
                raise ValidationError(f"The {label} cannot be negative")
        if is_delivery_enabled and charge_type_enum == DeliveryChargeType.FLAT and flat_charge is None:
            raise ValidationError("A flat charge is required for flat-rate delivery")
        if is_delivery_enabled and charge_type_enum == DeliveryChargeType.PER_KM and rate_per_km is None:
            raise ValidationError("A rate per km is required for distance-based delivery")

        with transactional(self.db, self.logger, "save_delivery_config"):
            config = self.get_config(actor.id)
            if config is None:
                config = VendorDeliveryConfig(vendorID=actor.id)
                self.db.add(config)
            config.is_delivery_enabled = bool(is_delivery_enabled)
            config.charge_type = charge_type_enum
            config.flat_charge = flat_charge
            config.rate_per_km = rate_per_km
            config.free_above_amount = free_above_amount
            config.max_delivery_km = max_delivery_km
            self.db.flush()
            self.audit.record(
                actor.id,
                "UPDATE delivery config",
                "VendorDeliveryConfig",
                config.configID,
                {"charge_type": charge_type_enum.value, "enabled": bool(is_delivery_enabled)},
            )

        self.logger.info("Delivery config saved for vendor %s", actor.id)
        return config

    def compute_cart_charges(
        self,
        vendor_lines: Mapping[int, Iterable[Any]],
        distances_km: Optional[Mapping[int, Optional[float]]] = None,
    ) -> Dict[str, Any]:
        """Quote delivery per vendor and sum them.

        Each vendor's free-above threshold only looks at that vendor's lines.
        """
        distances_km = distances_km or {}
        quotes: List[VendorDeliveryQuote] = []
        total = 0.0
        for vendor_id, lines in vendor_lines.items():
            vendor = self.db.get(User, vendor_id)
            if vendor is None:
                continue
            subtotal = compute_subtotal(list(lines))
            distance = distances_km.get(vendor_id)
            charge = compute_charge(vendor.delivery_config, subtotal, distance)
            if charge is not None:
                charge = round_money(charge)
                total += charge
            quotes.append(
                VendorDeliveryQuote(
                    vendor_id=vendor_id,
                    vendor_name=vendor.display_name,
                    charge=charge,
                    distance_km=distance,
                )
            )

        return {
            "per_vendor": [quote.to_dict() for quote in quotes],
            "total_delivery_charge": round_money(total),
            "pickup_only_vendor_ids": [q.vendor_id for q in quotes if not q.delivery_available],
        }
