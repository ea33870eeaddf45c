from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from flask import Flask, g, has_request_context, request

from rental_market.config import Config

# Attributes every LogRecord carries; anything else arrived through `extra=`
_STANDARD_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "request_id", "path", "method", "actor_id", "actor_role"}

# Chatty third-party loggers kept at WARNING unless explicitly asked for
_QUIET_LOGGERS = ("werkzeug", "urllib3", "sqlalchemy.engine")


def _actor_fields() -> Dict[str, Optional[Any]]:
    user = getattr(g, "current_user", None)
    if user is None:
        return {"actor_id": None, "actor_role": None}
    role = getattr(user, "role", None)
    return {"actor_id": user.userID, "actor_role": getattr(role, "value", role)}


class RequestContextFilter(logging.Filter):
    """Tag records with the request id, route and acting user of the current request."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        fields: Dict[str, Optional[Any]] = {
            "request_id": None,
            "path": None,
            "method": None,
            "actor_id": None,
            "actor_role": None,
        }
        if has_request_context():
            fields.update(
                request_id=getattr(g, "request_id", None),
                path=request.path,
                method=request.method,
                **_actor_fields(),
            )
        for key, value in fields.items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if getattr(record, "request_id", None):
            payload["request"] = {
                "id": record.request_id,
                "method": getattr(record, "method", None),
                "path": getattr(record, "path", None),
            }
        if getattr(record, "actor_id", None) is not None:
            payload["actor"] = {"id": record.actor_id, "role": getattr(record, "actor_role", None)}
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(app: Flask) -> None:
    """Install JSON logging on the root logger, or plain Flask logging when disabled."""

    if not Config.SQL_ECHO:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    if not Config.STRUCTURED_LOGS_ENABLED:
        app.logger.setLevel(Config.LOG_LEVEL)
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(Config.LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())

    # Replace handlers so a reloaded app does not log twice
    root_logger.handlers = [handler]
    app.logger.handlers = [handler]

    app.logger.debug("Structured logging configured for %s", app.name)


def ensure_request_id() -> str:
    """Reuse the caller's request id header when present, otherwise mint one."""
    if getattr(g, "request_id", None):
        return g.request_id
    incoming = request.headers.get(Config.REQUEST_ID_HEADER)
    g.request_id = incoming or uuid4().hex
    return g.request_id
