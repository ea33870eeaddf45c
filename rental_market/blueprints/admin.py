from __future__ import annotations

from flask import Blueprint, jsonify, request

from rental_market.auth import require_role
from rental_market.blueprints.common import current_actor
from rental_market.database import get_db
from rental_market.models import UserRole
from rental_market.observability import get_metrics_snapshot
from rental_market.observability.business_metrics import (
    compute_orders_metrics,
    compute_quotation_funnel,
    compute_return_summary,
    compute_revenue_summary,
    generate_quarter_windows,
    select_quarter_window,
)

admin_bp = Blueprint("admin", __name__)


@admin_bp.route("/admin/metrics", methods=["GET"])
def admin_metrics():
    require_role(current_actor(), UserRole.ADMIN)
    return jsonify(get_metrics_snapshot())


@admin_bp.route("/api/admin/analytics", methods=["GET"])
def admin_analytics():
    require_role(current_actor(), UserRole.ADMIN)
    db = get_db()
    windows = generate_quarter_windows()
    window = select_quarter_window(windows, request.args.get("quarter"))
    return jsonify({
        "quarter": {"key": window.key, "label": window.label},
        "orders": compute_orders_metrics(db, window),
        "revenue": compute_revenue_summary(db, window),
        "returns": compute_return_summary(db, window),
        "quotation_funnel": compute_quotation_funnel(db),
    })
