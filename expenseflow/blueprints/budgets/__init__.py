"""
expenseflow/blueprints/budgets/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose budgets_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import budgets_bp  # noqa: F401
