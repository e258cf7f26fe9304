"""
expenseflow/blueprints/users/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose users_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import users_bp  # noqa: F401
