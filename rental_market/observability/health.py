from __future__ import annotations

from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from rental_market.database import engine as default_engine


def check_database_health(engine: Optional[Engine] = None) -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    target = engine or default_engine
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP", "dialect": target.dialect.name}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc.orig) if exc.orig else str(exc)}
