"""
expenseflow/seed.py

Seed default reference data.

Rules:
- Safe to run multiple times (idempotent).
- Seeds the kilometer rate table so km-priced trips can be created on a fresh install.

NOTE:
- Users, departments and projects are not seeded here; the first admin is
  created through /auth/seed-admin and the rest through the API.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from .extensions import db
from .models import KmRate

logger = logging.getLogger(__name__)


DEFAULT_KM_RATES = [
    # rate_value, effective_from, effective_to (exclusive), description
    (Decimal("0.150"), date(2024, 1, 1), date(2025, 1, 1), "Standard rate for 2024"),
    (Decimal("0.155"), date(2025, 1, 1), None, "Updated rate for 2025"),
]


def seed_default_rates() -> int:
    """Insert the default KM rates that are missing. Returns how many were added."""
    added = 0
    for rate_value, effective_from, effective_to, description in DEFAULT_KM_RATES:
        exists = KmRate.query.filter_by(effective_from=effective_from).first()
        if exists:
            continue
        db.session.add(
            KmRate(
                rate_value=rate_value,
                effective_from=effective_from,
                effective_to=effective_to,
                description=description,
            )
        )
        added += 1

    db.session.commit()
    logger.info("Seeded %s default KM rate(s)", added)
    return added
