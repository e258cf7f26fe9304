"""
expenseflow/blueprints/admin_requests/routes.py

Administrative request routes (JSON).

Administrative requests (budget increases, cost adjustments, other) have no
approval chain: a single Finance decision approves or rejects them.
"""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from ... import approvals
from ...errors import NotAuthorizedError
from ...models import AdminRequest, RequestStatus, Role
from ...security import current_acting_role, roles_required
from ...utils import json_payload, parse_bool

admin_requests_bp = Blueprint("admin_requests", __name__, url_prefix="/admin-requests")


def _is_finance_or_admin() -> bool:
    return current_acting_role() in (Role.FINANCE, Role.ADMIN)


@admin_requests_bp.route("", methods=["POST"])
@login_required
def create_request():
    req = approvals.create_admin_request(json_payload(), current_user, current_acting_role())
    return jsonify(req.to_dict()), 201


@admin_requests_bp.route("", methods=["GET"])
@login_required
def list_requests():
    """Own requests; Finance and Admin also see every request waiting for Finance."""
    query = AdminRequest.query
    if _is_finance_or_admin():
        query = query.filter(
            (AdminRequest.user_id == current_user.id) | (AdminRequest.status == RequestStatus.PENDING_FINANCE)
        )
    else:
        query = query.filter(AdminRequest.user_id == current_user.id)
    requests = query.order_by(AdminRequest.created_at.desc(), AdminRequest.id.desc()).all()
    return jsonify([r.to_dict() for r in requests])


@admin_requests_bp.route("/<int:request_id>", methods=["GET"])
@login_required
def view_request(request_id: int):
    req = approvals.get_admin_request(request_id)
    if req.user_id != current_user.id and not _is_finance_or_admin():
        raise NotAuthorizedError("You cannot view this administrative request")
    return jsonify(req.to_dict())


@admin_requests_bp.route("/<int:request_id>/decision", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def decide(request_id: int):
    data = json_payload()
    req = approvals.decide_admin_request(
        request_id,
        current_user,
        parse_bool(data.get("approve"), field="approve"),
        data.get("reason"),
        current_acting_role(),
    )
    return jsonify(req.to_dict())


@admin_requests_bp.route("/<int:request_id>/pay", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def mark_paid(request_id: int):
    req = approvals.mark_admin_paid(request_id, current_user, current_acting_role())
    return jsonify(req.to_dict())
