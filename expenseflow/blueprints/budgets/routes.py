"""
expenseflow/blueprints/budgets/routes.py

Budget owners and ledger routes (JSON).

Includes:
- Departments: create / update managers, budget status, monthly bonus grant/reset
- Projects: create (opening ledger row), budget status, activation
- Ledger history for either owner kind

IMPORTANT:
- Budget numbers are never edited in place; every change goes through the
  ledger and is audited in the same transaction.
"""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import current_user, login_required
from sqlalchemy.exc import IntegrityError

from ... import ledger
from ...audit import record, serialize_model
from ...errors import NotFoundError, ValidationError
from ...extensions import db
from ...models import Department, OwnerKind, Project, Role, User
from ...security import admin_required, current_acting_role, roles_required
from ...utils import (
    json_payload,
    money,
    parse_bool,
    parse_date,
    parse_decimal,
    parse_optional_int,
    unit_of_work,
)

budgets_bp = Blueprint("budgets", __name__, url_prefix="/budgets")


# ---------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------
def _owner_kind(raw: str) -> str:
    kind = {"departments": OwnerKind.DEPARTMENT, "projects": OwnerKind.PROJECT}.get(raw)
    if kind is None:
        raise NotFoundError("Budget owner kind", raw)
    return kind


def _user_ref(data: dict, key: str) -> int | None:
    """Optional user id; the user must exist and be active."""
    user_id = parse_optional_int(data.get(key), field=key)
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise ValidationError(f"User {user_id} does not exist or is inactive", field=key)
    return user_id


def _name(data: dict) -> str:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("'name' is required", field="name")
    return name


def _non_negative_money(data: dict, key: str, required: bool = True):
    value = parse_decimal(data.get(key), field=key)
    if value is None:
        if required:
            raise ValidationError(f"'{key}' is required", field=key)
        return None
    if value < 0:
        raise ValidationError(f"'{key}' cannot be negative", field=key)
    return money(value)


# ---------------------------------------------------------------------
# Departments
# ---------------------------------------------------------------------
@budgets_bp.route("/departments", methods=["GET"])
@login_required
def list_departments():
    departments = Department.query.order_by(Department.name.asc()).all()
    return jsonify([d.to_dict() for d in departments])


@budgets_bp.route("/departments", methods=["POST"])
@login_required
@admin_required
def create_department():
    data = json_payload()
    name = _name(data)
    budget = _non_negative_money(data, "budget")

    try:
        with unit_of_work():
            department = Department(
                name=name,
                budget=budget,
                budget_adjustments=money(0),
                monthly_budget_bonus=money(0),
                available_budget=budget,
                manager_id=_user_ref(data, "manager_id"),
                second_manager_id=_user_ref(data, "second_manager_id"),
                third_manager_id=_user_ref(data, "third_manager_id"),
                third_manager_required=parse_bool(data.get("third_manager_required", False),
                                                  field="third_manager_required"),
                is_active=True,
            )
            db.session.add(department)
            db.session.flush()
            record(current_user, "DEPARTMENT_CREATED", entity=department, after=serialize_model(department))
    except IntegrityError:
        raise ValidationError(f"Department '{name}' already exists", field="name")

    return jsonify(department.to_dict()), 201


@budgets_bp.route("/departments/<int:department_id>", methods=["PATCH"])
@login_required
@admin_required
def update_department(department_id: int):
    """Managers, tertiary flag and active state. Budget changes go through the ledger."""
    data = json_payload()
    with unit_of_work():
        department = ledger.load_owner(OwnerKind.DEPARTMENT, department_id, lock=True)
        before = serialize_model(department)
        for key in ("manager_id", "second_manager_id", "third_manager_id"):
            if key in data:
                setattr(department, key, _user_ref(data, key))
        if "third_manager_required" in data:
            department.third_manager_required = parse_bool(data["third_manager_required"],
                                                           field="third_manager_required")
        if "is_active" in data:
            department.is_active = parse_bool(data["is_active"], field="is_active")
        db.session.flush()
        record(current_user, "DEPARTMENT_UPDATED", entity=department, before=before,
               after=serialize_model(department))
    return jsonify(department.to_dict())


@budgets_bp.route("/departments/<int:department_id>/bonus", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def grant_bonus(department_id: int):
    data = json_payload()
    amount = parse_decimal(data.get("amount"), field="amount")
    if amount is None:
        raise ValidationError("'amount' is required", field="amount")
    with unit_of_work():
        department = ledger.grant_monthly_bonus(
            department_id,
            amount,
            current_user,
            period_days=parse_optional_int(data.get("period_days"), field="period_days"),
        )
    return jsonify(department.to_dict())


@budgets_bp.route("/departments/bonus/reset", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def reset_bonus():
    department_id = parse_optional_int(json_payload().get("department_id"), field="department_id")
    with unit_of_work():
        count = ledger.reset_monthly_bonus(department_id, actor=current_user)
    return jsonify({"reset": count})


# ---------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------
@budgets_bp.route("/projects", methods=["GET"])
@login_required
def list_projects():
    query = Project.query
    if current_acting_role() not in (Role.FINANCE, Role.ADMIN):
        query = query.filter(Project.is_active.is_(True))
    return jsonify([p.to_dict() for p in query.order_by(Project.name.asc()).all()])


@budgets_bp.route("/projects", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def create_project():
    """New project with its opening ('initial') ledger row."""
    data = json_payload()
    name = _name(data)
    original_budget = _non_negative_money(data, "original_budget")
    department_id = parse_optional_int(data.get("department_id"), field="department_id")
    if department_id is not None and db.session.get(Department, department_id) is None:
        raise NotFoundError("Department", department_id)

    try:
        with unit_of_work():
            project = Project(
                name=name,
                department_id=department_id,
                original_budget=original_budget,
                budget_adjustments=money(0),
                available_budget=original_budget,
                manager_id=_user_ref(data, "manager_id"),
                second_manager_id=_user_ref(data, "second_manager_id"),
                expiry_date=parse_date(data.get("expiry_date"), field="expiry_date"),
                is_active=True,
            )
            db.session.add(project)
            db.session.flush()
            ledger.record_initial(project, current_user)
            record(current_user, "PROJECT_CREATED", entity=project, after=serialize_model(project))
    except IntegrityError:
        raise ValidationError(f"Project '{name}' already exists", field="name")

    return jsonify(project.to_dict()), 201


@budgets_bp.route("/projects/<int:project_id>/activate", methods=["POST"])
@login_required
@roles_required(Role.FINANCE)
def activate_project(project_id: int):
    with unit_of_work():
        project = ledger.activate_project(project_id, current_user)
    return jsonify(project.to_dict())


# ---------------------------------------------------------------------
# Status & history (either owner kind)
# ---------------------------------------------------------------------
@budgets_bp.route("/<string:kind>/<int:owner_id>", methods=["GET"])
@login_required
def budget_status(kind: str, owner_id: int):
    return jsonify(ledger.budget_status(_owner_kind(kind), owner_id))


@budgets_bp.route("/<string:kind>/<int:owner_id>/history", methods=["GET"])
@login_required
@roles_required(Role.MANAGER, Role.FINANCE)
def budget_history(kind: str, owner_id: int):
    entries = ledger.history(_owner_kind(kind), owner_id)
    return jsonify([e.to_dict() for e in entries])
