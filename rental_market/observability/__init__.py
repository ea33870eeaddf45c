"""In-process metrics, structured logging and health checks for the marketplace."""

from .logging_config import configure_logging, ensure_request_id
from .metrics import (
    get_counter_total,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
    set_gauge,
    timed,
)
from .health import check_database_health

__all__ = [
    "check_database_health",
    "configure_logging",
    "ensure_request_id",
    "get_counter_total",
    "get_metrics_snapshot",
    "increment_counter",
    "observe_latency",
    "record_event",
    "reset_metrics",
    "set_gauge",
    "timed",
]
