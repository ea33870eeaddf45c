from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import RENTAL_END, RENTAL_START, make_user, make_variant
from rental_market.database import Base
from rental_market.errors import NotFound, OverbookedError, ValidationError
from rental_market.lifecycle import ReservationStatus
from rental_market.models import Reservation, UserRole
from rental_market.services.inventory_service import InventoryService


def test_overlapping_reservations_fill_stock_then_overbook(db_session, variant):
    service = InventoryService(db_session)

    first = service.reserve(variant.variantID, RENTAL_START, RENTAL_END, 3)
    second = service.reserve(variant.variantID, RENTAL_START, RENTAL_END, 2)
    assert first.available_qty == 2
    assert second.available_qty == 0

    with pytest.raises(OverbookedError):
        service.reserve(variant.variantID, RENTAL_START + timedelta(days=1), RENTAL_END + timedelta(days=1), 1)

    assert db_session.query(Reservation).count() == 2


def test_adjacent_windows_do_not_overlap(db_session, variant):
    service = InventoryService(db_session)
    service.reserve(variant.variantID, RENTAL_START, RENTAL_END, 5)

    later = service.reserve(variant.variantID, RENTAL_END, RENTAL_END + timedelta(days=2), 5)
    assert later.quantity == 5


def test_released_reservations_free_stock(db_session, variant):
    service = InventoryService(db_session)
    held = service.reserve(variant.variantID, RENTAL_START, RENTAL_END, 5)

    held.status = ReservationStatus.AVAILABLE
    db_session.commit()

    assert service.available_quantity(variant.variantID, RENTAL_START, RENTAL_END) == 5
    service.reserve(variant.variantID, RENTAL_START, RENTAL_END, 5)


def test_reserve_validates_input(db_session, variant):
    service = InventoryService(db_session)
    with pytest.raises(ValidationError):
        service.reserve(variant.variantID, RENTAL_END, RENTAL_START, 1)
    with pytest.raises(ValidationError):
        service.reserve(variant.variantID, RENTAL_START, RENTAL_END, 0)
    with pytest.raises(NotFound):
        service.reserve(999, RENTAL_START, RENTAL_END, 1)


def test_ensure_available_does_not_hold_stock(db_session, variant):
    service = InventoryService(db_session)
    service.ensure_available(variant.variantID, RENTAL_START, RENTAL_END, 5)
    assert db_session.query(Reservation).count() == 0

    with pytest.raises(OverbookedError):
        service.ensure_available(variant.variantID, RENTAL_START, RENTAL_END, 6)


def test_concurrent_reservations_never_exceed_stock(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autoflush=False, bind=engine, future=True)

    setup = SessionLocal()
    vendor = make_user(setup, UserRole.VENDOR, "Race Vendor")
    variant_id = make_variant(setup, vendor, quantity=3).variantID
    setup.close()

    outcomes = []
    lock = threading.Lock()

    def worker():
        session = SessionLocal()
        try:
            InventoryService(session).reserve(variant_id, RENTAL_START, RENTAL_END, 1)
            result = "reserved"
        except OverbookedError:
            result = "overbooked"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    check = SessionLocal()
    held = check.query(Reservation).filter_by(variantID=variant_id).all()
    check.close()
    engine.dispose()

    assert outcomes.count("reserved") == 3
    assert outcomes.count("overbooked") == 5
    assert sum(r.quantity for r in held) == 3
