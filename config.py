"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, secret key,
approval thresholds and logging. It uses environment variables for sensitive information and defaults for development.
In production, make sure to set the appropriate environment variables and secure the secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'expenseflow.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection (JSON clients send X-CSRFToken)
    WTF_CSRF_ENABLED = True

    APP_NAME = "Trip Expense Approvals"

    # Money is stored with 2 decimals (Numeric(12, 2))
    CURRENCY_PRECISION = int(os.environ.get("CURRENCY_PRECISION", "2"))

    # Ticket trips above this distance need the tertiary department manager
    TERTIARY_APPROVAL_KM_THRESHOLD = int(os.environ.get("TERTIARY_APPROVAL_KM_THRESHOLD", "50"))

    # A granted monthly bonus stays active for this many days unless reset earlier
    MONTHLY_BONUS_PERIOD_DAYS = int(os.environ.get("MONTHLY_BONUS_PERIOD_DAYS", "31"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestConfig(Config):
    """Configuration used by the test-suite (in-memory DB, no CSRF)."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "DEBUG"
