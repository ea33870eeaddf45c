# rental_market/main.py
import logging
import time

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from rental_market.blueprints.admin import admin_bp
from rental_market.blueprints.checkout import checkout_bp
from rental_market.blueprints.orders import orders_bp
from rental_market.blueprints.quotations import quotations_bp
from rental_market.config import Config
from rental_market.database import Base, close_db, engine, get_db
from rental_market.errors import OperationFailed, RentalError
from rental_market.models import User
from rental_market.observability import (
    check_database_health,
    configure_logging,
    increment_counter,
    observe_latency,
)
from rental_market.observability.logging_config import ensure_request_id
from rental_market.services import EmailService, build_gateway

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.extensions["checkout_gateway"] = build_gateway()
app.extensions["email_service"] = EmailService()

app.register_blueprint(quotations_bp)
app.register_blueprint(orders_bp)
app.register_blueprint(checkout_bp)
app.register_blueprint(admin_bp)

logger = logging.getLogger(__name__)


# Initialize database tables
def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)

# Initialize database on startup
init_database()


@app.before_request
def before_request_logging():
    g.current_user = None
    if 'user_id' in session:
        db = get_db()
        g.current_user = db.query(User).filter_by(userID=session['user_id']).first()
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(RentalError)
def handle_rental_error(error: RentalError):
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    # Let Flask render its own HTTP errors (404 routes, 405 methods)
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unhandled error: %s", error)
    failure = OperationFailed()
    return jsonify(failure.to_dict()), failure.status_code


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status
        }
    }), status_code
