from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rental_market.errors import OperationFailed, RentalError
from rental_market.observability import increment_counter


@contextmanager
def transactional(db: Session, logger: logging.Logger, operation: str) -> Iterator[Session]:
    """Commit the block as one unit; no partial write survives a failure."""
    try:
        yield db
        db.commit()
    except RentalError as exc:
        db.rollback()
        increment_counter(
            "operations_rejected_total",
            labels={"operation": operation, "error": type(exc).__name__},
        )
        logger.warning("%s rejected: %s", operation, exc.message)
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        increment_counter("operations_failed_total", labels={"operation": operation})
        logger.exception("%s failed", operation)
        raise OperationFailed() from exc
    except Exception:
        db.rollback()
        raise
