"""
expenseflow/blueprints/settings/routes.py

Settings routes (JSON):
- KM rates CRUD (Finance/Admin) and bulk trip cost recalculation
- Manager delegations (a manager delegates their approvals for a time window)

SECURITY:
- UI is never trusted; all checks are server-side.
"""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from ... import rates
from ...audit import record, serialize_model
from ...errors import NotAuthorizedError, NotFoundError, ValidationError
from ...extensions import db
from ...models import ManagerDelegation, Role, User, utcnow
from ...security import APPROVE_TRIPS, current_acting_role, roles_required
from ...utils import json_payload, parse_datetime, parse_optional_int, unit_of_work

settings_bp = Blueprint("settings", __name__, url_prefix="/settings")


# ---------------------------------------------------------------------
# KM rates
# ---------------------------------------------------------------------
@settings_bp.route("/km-rates", methods=["GET"])
@login_required
def list_km_rates():
    return jsonify([r.to_dict() for r in rates.list_rates()])


@settings_bp.route("/km-rates", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def create_km_rate():
    rate = rates.create_rate(json_payload(), current_user)
    return jsonify(rate.to_dict()), 201


@settings_bp.route("/km-rates/<int:rate_id>", methods=["PUT"])
@login_required
@roles_required(Role.FINANCE)
def update_km_rate(rate_id: int):
    rate = rates.update_rate(rate_id, json_payload(), current_user)
    return jsonify(rate.to_dict())


@settings_bp.route("/km-rates/<int:rate_id>", methods=["DELETE"])
@login_required
@roles_required(Role.FINANCE)
def delete_km_rate(rate_id: int):
    rates.delete_rate(rate_id, current_user)
    return jsonify({"ok": True})


@settings_bp.route("/km-rates/recalculate", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def recalculate_costs():
    rate_id = parse_optional_int(json_payload().get("rate_id"), field="rate_id")
    updated = rates.recalculate_trip_costs(current_user, rate_id=rate_id)
    return jsonify({"updated": updated})


# ---------------------------------------------------------------------
# Delegations
# ---------------------------------------------------------------------
@settings_bp.route("/delegations", methods=["GET"])
@login_required
def list_delegations():
    """Delegations given or received by the current user (all of them for Admin)."""
    query = ManagerDelegation.query
    if current_acting_role() != Role.ADMIN:
        query = query.filter(
            (ManagerDelegation.delegator_id == current_user.id)
            | (ManagerDelegation.delegate_id == current_user.id)
        )
    delegations = query.order_by(ManagerDelegation.starts_at.desc()).all()
    return jsonify([d.to_dict() for d in delegations])


@settings_bp.route("/delegations", methods=["POST"])
@login_required
@roles_required(Role.MANAGER)
def create_delegation():
    """
    Managers delegate their own approvals; Admin may set up any delegation.

    Body: {"delegate_id", "starts_at", "ends_at", "capabilities"?, "delegator_id"? (Admin)}
    """
    data = json_payload()
    delegator_id = current_user.id
    if current_acting_role() == Role.ADMIN:
        delegator_id = parse_optional_int(data.get("delegator_id"), field="delegator_id") or current_user.id

    delegate_id = parse_optional_int(data.get("delegate_id"), field="delegate_id")
    if delegate_id is None:
        raise ValidationError("'delegate_id' is required", field="delegate_id")
    if delegate_id == delegator_id:
        raise ValidationError("A user cannot delegate to themselves", field="delegate_id")
    delegate = db.session.get(User, delegate_id)
    if delegate is None or not delegate.is_active:
        raise ValidationError(f"User {delegate_id} does not exist or is inactive", field="delegate_id")

    starts_at = parse_datetime(data.get("starts_at"), field="starts_at") or utcnow()
    ends_at = parse_datetime(data.get("ends_at"), field="ends_at")
    if ends_at is None or ends_at <= starts_at:
        raise ValidationError("'ends_at' must be after 'starts_at'", field="ends_at")

    capabilities = data.get("capabilities") or [APPROVE_TRIPS]
    if isinstance(capabilities, str):
        capabilities = [capabilities]

    with unit_of_work():
        delegation = ManagerDelegation(
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            capabilities=",".join(sorted({str(c).strip() for c in capabilities if str(c).strip()})),
            starts_at=starts_at,
            ends_at=ends_at,
            created_by=current_user.id,
        )
        db.session.add(delegation)
        db.session.flush()
        record(current_user, "DELEGATION_CREATED", entity=delegation, after=serialize_model(delegation))

    return jsonify(delegation.to_dict()), 201


@settings_bp.route("/delegations/<int:delegation_id>", methods=["DELETE"])
@login_required
def revoke_delegation(delegation_id: int):
    with unit_of_work():
        delegation = db.session.get(ManagerDelegation, delegation_id)
        if delegation is None:
            raise NotFoundError("ManagerDelegation", delegation_id)
        if delegation.delegator_id != current_user.id and current_acting_role() != Role.ADMIN:
            raise NotAuthorizedError("Only the delegator can revoke a delegation")
        record(current_user, "DELEGATION_REVOKED", entity=delegation, before=serialize_model(delegation))
        db.session.delete(delegation)
    return jsonify({"ok": True})
