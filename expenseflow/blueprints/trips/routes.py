"""
expenseflow/blueprints/trips/routes.py

Trip request routes (JSON).

Includes:
- create / list own / pending approvals / read
- workflow steps and status history
- decide (single and bulk), cancel, mark paid
- budget check and cost update

IMPORTANT:
- UI is never trusted. Every call passes the session's acting role into the
  core; the core performs its own authorisation on top of the decorators.
"""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from ... import approvals, ledger
from ...errors import NotAuthorizedError, ValidationError
from ...models import OwnerKind, Role, TripRequest
from ...security import current_acting_role, roles_required
from ...utils import json_payload, parse_bool, parse_decimal, parse_optional_int

trips_bp = Blueprint("trips", __name__, url_prefix="/trips")


# ---------------------------------------------------------------------
# Access helpers
# ---------------------------------------------------------------------
def _visible_trip(request_id: int) -> TripRequest:
    """
    Requester, any approver on its chain, Finance and Admin may read a trip.
    """
    trip = approvals.get_trip(request_id)
    if current_acting_role() in (Role.FINANCE, Role.ADMIN):
        return trip
    if trip.user_id == current_user.id:
        return trip
    if any(step.approver_id == current_user.id for step in trip.steps):
        return trip
    raise NotAuthorizedError("You cannot view this trip request")


# ---------------------------------------------------------------------
# Create / list / read
# ---------------------------------------------------------------------
@trips_bp.route("", methods=["POST"])
@login_required
def create_trip():
    trip = approvals.create_trip_request(json_payload(), current_user, current_acting_role())
    return jsonify(trip.to_dict(with_steps=True)), 201


@trips_bp.route("", methods=["GET"])
@login_required
def my_trips():
    trips = approvals.trips_for_requester(current_user)
    return jsonify([t.to_dict() for t in trips])


@trips_bp.route("/pending", methods=["GET"])
@login_required
def pending_approvals():
    """Trips whose head step the current user can decide."""
    trips = approvals.pending_for(current_user, current_acting_role())
    return jsonify([t.to_dict(with_steps=True) for t in trips])


@trips_bp.route("/<int:request_id>", methods=["GET"])
@login_required
def view_trip(request_id: int):
    return jsonify(_visible_trip(request_id).to_dict(with_steps=True))


@trips_bp.route("/<int:request_id>/steps", methods=["GET"])
@login_required
def workflow_steps(request_id: int):
    _visible_trip(request_id)
    return jsonify([s.to_dict() for s in approvals.get_workflow_steps(request_id)])


@trips_bp.route("/<int:request_id>/history", methods=["GET"])
@login_required
def status_history(request_id: int):
    _visible_trip(request_id)
    return jsonify([h.to_dict() for h in approvals.get_status_history(request_id)])


# ---------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------
@trips_bp.route("/<int:request_id>/decision", methods=["POST"])
@login_required
def decide(request_id: int):
    data = json_payload()
    trip = approvals.decide(
        request_id,
        current_user,
        parse_bool(data.get("approve"), field="approve"),
        data.get("reason"),
        current_acting_role(),
    )
    return jsonify(trip.to_dict(with_steps=True))


@trips_bp.route("/bulk-decision", methods=["POST"])
@login_required
def bulk_decide():
    data = json_payload()
    raw_ids = data.get("request_ids")
    if not isinstance(raw_ids, list) or not raw_ids:
        raise ValidationError("'request_ids' must be a non-empty list", field="request_ids")
    request_ids = [parse_optional_int(value, field="request_ids") for value in raw_ids]
    if any(value is None for value in request_ids):
        raise ValidationError("'request_ids' contains an empty value", field="request_ids")

    outcomes = approvals.bulk_decide(
        request_ids,
        current_user,
        parse_bool(data.get("approve"), field="approve"),
        data.get("reason"),
        current_acting_role(),
    )
    return jsonify({
        "results": outcomes,
        "succeeded": sum(1 for o in outcomes if o["ok"]),
        "failed": sum(1 for o in outcomes if not o["ok"]),
    })


@trips_bp.route("/<int:request_id>/cancel", methods=["POST"])
@login_required
def cancel(request_id: int):
    trip = approvals.cancel(request_id, current_user, json_payload().get("reason"), current_acting_role())
    return jsonify(trip.to_dict(with_steps=True))


@trips_bp.route("/<int:request_id>/pay", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def mark_paid(request_id: int):
    trip = approvals.mark_paid(request_id, current_user, current_acting_role())
    return jsonify(trip.to_dict())


# ---------------------------------------------------------------------
# Budget & cost
# ---------------------------------------------------------------------
@trips_bp.route("/budget-check", methods=["POST"])
@login_required
def check_budget():
    """
    Preview whether a cost fits the owner's budget.

    Body: {"project_id" | "department_id", "cost", "exclude_trip_id"?}
    """
    data = json_payload()
    cost = parse_decimal(data.get("cost"), field="cost")
    if cost is None or cost < 0:
        raise ValidationError("A non-negative cost is required", field="cost")

    project_id = parse_optional_int(data.get("project_id"), field="project_id")
    department_id = parse_optional_int(data.get("department_id"), field="department_id")
    if project_id is not None:
        owner_kind, owner_id = OwnerKind.PROJECT, project_id
    elif department_id is not None:
        owner_kind, owner_id = OwnerKind.DEPARTMENT, department_id
    else:
        raise ValidationError("Either project_id or department_id is required", field="project_id")

    check = ledger.check_for_trip(
        owner_kind,
        owner_id,
        cost,
        exclude_trip_id=parse_optional_int(data.get("exclude_trip_id"), field="exclude_trip_id"),
    )
    return jsonify(check.to_dict())


@trips_bp.route("/<int:request_id>/budget-check", methods=["GET"])
@login_required
def check_trip_budget(request_id: int):
    trip = _visible_trip(request_id)
    owner_kind, owner_id = trip.owner
    check = ledger.check_for_trip(owner_kind, owner_id, trip.cost, exclude_trip_id=trip.id)
    return jsonify(check.to_dict())


@trips_bp.route("/<int:request_id>/cost", methods=["PUT"])
@login_required
def update_cost(request_id: int):
    data = json_payload()
    method = data.get("cost_method")
    if not method:
        raise ValidationError("'cost_method' is required", field="cost_method")
    trip = approvals.update_trip_cost(
        request_id,
        current_user,
        method,
        distance=data.get("kilometers"),
        amount=data.get("cost"),
        acting_role=current_acting_role(),
    )
    return jsonify(trip.to_dict())
