"""
expenseflow/blueprints/admin_requests/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose admin_requests_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import admin_requests_bp  # noqa: F401
