from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from rental_market.models import ActivityLog
from rental_market.timeutils import to_storage, utcnow


class AuditService:
    """Append-only activity log written inside the caller's transaction."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        entity: str,
        entity_id: Optional[int],
        details: Optional[Dict[str, Any]] = None,
    ) -> ActivityLog:
        entry = ActivityLog(
            userID=actor_id,
            action=action,
            entity=entity,
            entity_id=entity_id,
            details=json.dumps(details, default=str) if details else None,
            timestamp=to_storage(utcnow()),
        )
        self.db.add(entry)
        self.logger.debug(
            "Audit %s on %s %s",
            action,
            entity,
            entity_id,
            extra={"actor_id": actor_id},
        )
        return entry

    def history(self, entity: str, entity_id: int) -> List[ActivityLog]:
        return (
            self.db.query(ActivityLog)
            .filter_by(entity=entity, entity_id=entity_id)
            .order_by(desc(ActivityLog.activityID))
            .all()
        )
