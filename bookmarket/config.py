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

    # SQLite dev fallback stored under /db/app.db to keep repo tidy
    fallback_path = BASE_DIR / "db" / "app.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "ReBooked Marketplace")
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

    # Order lifecycle policy knobs
    COMMIT_WINDOW_HOURS: Final[int] = int(os.getenv("COMMIT_WINDOW_HOURS", "48"))
    # Sellers get one reminder once less than this many hours remain; urgent below the second threshold
    COMMIT_REMINDER_HOURS: Final[int] = int(os.getenv("COMMIT_REMINDER_HOURS", "24"))
    COMMIT_REMINDER_URGENT_HOURS: Final[int] = int(os.getenv("COMMIT_REMINDER_URGENT_HOURS", "12"))
    PRICE_TOLERANCE: Final[float] = float(os.getenv("PRICE_TOLERANCE", "0.01"))
    PLATFORM_BOOK_COMMISSION_RATE: Final[float] = float(os.getenv("PLATFORM_BOOK_COMMISSION_RATE", "0.10"))
    PLATFORM_DELIVERY_FEE_SHARE: Final[float] = float(os.getenv("PLATFORM_DELIVERY_FEE_SHARE", "1.0"))
    FEATURE_SALE_COMMITMENTS_ENABLED: Final[bool] = _str_to_bool(
        os.getenv("FEATURE_SALE_COMMITMENTS_ENABLED"), default=False
    )

    # Paystack
    PAYSTACK_SECRET_KEY: Final[str] = os.getenv("PAYSTACK_SECRET_KEY", "")
    PAYSTACK_BASE_URL: Final[str] = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_CURRENCY: Final[str] = os.getenv("PAYSTACK_CURRENCY", "ZAR")
    PAYSTACK_SIGNATURE_HEADER: Final[str] = os.getenv("PAYSTACK_SIGNATURE_HEADER", "x-paystack-signature")
    PAYSTACK_ALLOW_TEST_WEBHOOKS: Final[bool] = _str_to_bool(
        os.getenv("PAYSTACK_ALLOW_TEST_WEBHOOKS"), default=False
    )
    # Direct purchases re-check the reference with Paystack before marking an order paid
    PAYSTACK_VERIFY_PURCHASES: Final[bool] = _str_to_bool(
        os.getenv("PAYSTACK_VERIFY_PURCHASES"), default=True
    )

    # Courier aggregator
    COURIER_API_URL: Final[str] = os.getenv("COURIER_API_URL", "")
    COURIER_API_KEY: Final[str] = os.getenv("COURIER_API_KEY", "")

    # Email delivery
    EMAIL_API_URL: Final[str] = os.getenv("EMAIL_API_URL", "")
    EMAIL_API_KEY: Final[str] = os.getenv("EMAIL_API_KEY", "")
    EMAIL_FROM: Final[str] = os.getenv("EMAIL_FROM", "noreply@rebookedsolutions.co.za")
    OPERATIONS_EMAIL: Final[str] = os.getenv("OPERATIONS_EMAIL", "admin@rebookedsolutions.co.za")
    SYSTEM_EMAIL: Final[str] = os.getenv("SYSTEM_EMAIL", "system@rebookedsolutions.co.za")
    MAIL_QUEUE_MAX_RETRIES: Final[int] = int(os.getenv("MAIL_QUEUE_MAX_RETRIES", "3"))
    MAIL_QUEUE_BATCH_SIZE: Final[int] = int(os.getenv("MAIL_QUEUE_BATCH_SIZE", "50"))

    # Sensitive data at rest
    BANKING_ENCRYPTION_KEY: Final[str] = os.getenv("BANKING_ENCRYPTION_KEY", "")

    # Outbound HTTP reliability
    HTTP_TIMEOUT_SECONDS: Final[float] = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    PAYMENT_CIRCUIT_FAILURE_THRESHOLD: Final[int] = int(os.getenv("PAYMENT_CIRCUIT_FAILURE_THRESHOLD", "5"))
    PAYMENT_CIRCUIT_RECOVERY_SECONDS: Final[int] = int(os.getenv("PAYMENT_CIRCUIT_RECOVERY_SECONDS", "60"))

    # Observability and reliability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    # Cron jobs and operators authenticate with this token
    ADMIN_API_TOKEN: Final[str] = os.getenv("ADMIN_API_TOKEN", "")
    ADMIN_TOKEN_HEADER: Final[str] = os.getenv("ADMIN_TOKEN_HEADER", "X-Admin-Token")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["COMMIT_WINDOW_HOURS"] = cls.COMMIT_WINDOW_HOURS
        app.config["PLATFORM_BOOK_COMMISSION_RATE"] = cls.PLATFORM_BOOK_COMMISSION_RATE
        app.config["PAYSTACK_ALLOW_TEST_WEBHOOKS"] = cls.PAYSTACK_ALLOW_TEST_WEBHOOKS
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
