"""
Utility functions shared across the app. This includes:
- unit_of_work: the single transaction boundary of every mutating operation.
- money: quantise amounts to currency precision.
- parse_* helpers and json_payload: input parsing for JSON requests.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app, has_app_context, request
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrencyConflictError, ValidationError
from .extensions import db

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work():
    """
    Run a block inside one database transaction.

    Commits on success; rolls back on ANY exception and re-raises.
    Optimistic version mismatches and lock/serialization failures
    surface as ConcurrencyConflictError so callers can retry.
    """
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent modification detected: %s", exc)
        raise ConcurrencyConflictError() from exc
    except OperationalError as exc:
        db.session.rollback()
        logger.warning("Database lock/serialization failure: %s", exc.orig)
        raise ConcurrencyConflictError() from exc
    except Exception:
        db.session.rollback()
        raise


def _precision() -> int:
    if has_app_context():
        return int(current_app.config.get("CURRENCY_PRECISION", 2))
    return 2


def money(value) -> Decimal:
    """Quantise to currency precision (ROUND_HALF_UP)."""
    if value is None:
        value = Decimal("0")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    exp = Decimal(1).scaleb(-_precision())
    return value.quantize(exp, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------
def parse_decimal(value, field: str | None = None) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot). Empty -> None."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError("Expected a number", field=field)
    raw = str(value).strip().replace(",", ".")
    if raw == "":
        return None
    try:
        parsed = Decimal(raw)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"'{value}' is not a valid number", field=field)
    if not parsed.is_finite():
        raise ValidationError(f"'{value}' is not a valid number", field=field)
    return parsed


def parse_optional_int(value, field: str | None = None) -> int | None:
    """Parse optional int from a payload or query string."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("Expected an integer", field=field)
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"'{value}' is not a valid integer", field=field)


def parse_date(value, field: str | None = None) -> date | None:
    """Parse an ISO date (YYYY-MM-DD)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"'{value}' is not a valid date (YYYY-MM-DD)", field=field)


def parse_datetime(value, field: str | None = None) -> datetime | None:
    """Parse an ISO timestamp. Aware values are converted to naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"'{value}' is not a valid timestamp", field=field)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_bool(value, field: str | None = None) -> bool:
    """Accept JSON booleans and the usual string spellings."""
    if isinstance(value, bool):
        return value
    if value is None:
        raise ValidationError("A true/false value is required", field=field)
    raw = str(value).strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValidationError(f"'{value}' is not a valid true/false value", field=field)


def json_payload() -> dict:
    """Body of the current request as a dict (empty body -> {})."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
