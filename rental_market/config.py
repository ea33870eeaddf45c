"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "rentals.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Rental Marketplace")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py + Docker)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    SQLITE_BUSY_TIMEOUT_SECONDS: Final[int] = int(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "30"))

    # Hosted checkout
    PAYMENT_GATEWAY_MODE: Final[str] = os.getenv("PAYMENT_GATEWAY_MODE", "simulated")
    PAYMENT_GATEWAY_BASE_URL: Final[str] = os.getenv("PAYMENT_GATEWAY_BASE_URL", "https://checkout.example.com/pay")
    PAYMENT_GATEWAY_API_URL: Final[str] = os.getenv("PAYMENT_GATEWAY_API_URL", "https://api.checkout.example.com/v1/sessions")
    PAYMENT_GATEWAY_API_KEY: Final[str] = os.getenv("PAYMENT_GATEWAY_API_KEY", "")
    PAYMENT_CURRENCY: Final[str] = os.getenv("PAYMENT_CURRENCY", "inr")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: Final[float] = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"))
    PAYMENT_GATEWAY_FAILURE_PROBABILITY: Final[float] = float(os.getenv("PAYMENT_GATEWAY_FAILURE_PROBABILITY", "0.0"))
    SIMULATED_SESSION_LIMIT: Final[int] = int(os.getenv("SIMULATED_SESSION_LIMIT", "500"))
    PAYMENT_WEBHOOK_SECRET: Final[str] = os.getenv("PAYMENT_WEBHOOK_SECRET", "whsec_dev_only")
    PAYMENT_SUCCESS_URL: Final[str] = os.getenv("PAYMENT_SUCCESS_URL", "http://localhost:5000/payment/success")
    PAYMENT_CANCEL_URL: Final[str] = os.getenv("PAYMENT_CANCEL_URL", "http://localhost:5000/payment/cancel")

    # Outbound email
    EMAIL_SENDER: Final[str] = os.getenv("EMAIL_SENDER", "no-reply@rentals.example.com")
    EMAIL_FAILURE_PROBABILITY: Final[float] = float(os.getenv("EMAIL_FAILURE_PROBABILITY", "0.0"))
    # Oldest messages are dropped once the in-memory outbox is full
    EMAIL_OUTBOX_LIMIT: Final[int] = int(os.getenv("EMAIL_OUTBOX_LIMIT", "500"))

    # Observability and reliability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    ORDER_HISTORY_PAGE_SIZE: Final[int] = int(os.getenv("ORDER_HISTORY_PAGE_SIZE", "20"))
    DEFAULT_TIMEZONE: Final[str] = os.getenv("DEFAULT_TIMEZONE", "UTC")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["PAYMENT_CURRENCY"] = cls.PAYMENT_CURRENCY
        app.config["PAYMENT_WEBHOOK_SECRET"] = cls.PAYMENT_WEBHOOK_SECRET
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
