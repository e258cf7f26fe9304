"""
expenseflow/blueprints/trips/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose trips_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import trips_bp  # noqa: F401
