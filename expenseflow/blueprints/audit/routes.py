"""
expenseflow/blueprints/audit/routes.py

Audit trail (Admin only), newest first.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

from ...audit import get_audit_trail
from ...security import admin_required
from ...utils import parse_optional_int

audit_bp = Blueprint("audit", __name__, url_prefix="/audit")


@audit_bp.route("", methods=["GET"])
@login_required
@admin_required
def audit_trail():
    """Optional query args: actor_id, limit."""
    entries = get_audit_trail(
        actor_id=parse_optional_int(request.args.get("actor_id"), field="actor_id"),
        limit=parse_optional_int(request.args.get("limit"), field="limit"),
    )
    return jsonify([e.to_dict() for e in entries])
