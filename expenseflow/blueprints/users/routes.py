"""
User Management (Admin Only).

Rules enforced:
- Usernames are unique; passwords are stored hashed (Werkzeug).
- Role must be one of Employee / Manager / Finance / Admin.
- UI never trusted: we validate server-side.

Audit:
- CREATE / UPDATE logged
"""

from flask import Blueprint, jsonify
from flask_login import current_user, login_required
from sqlalchemy.exc import IntegrityError

from ...audit import record, serialize_model
from ...errors import NotFoundError, ValidationError
from ...extensions import db
from ...models import Department, Role, User
from ...security import admin_required
from ...utils import json_payload, parse_bool, parse_optional_int, unit_of_work


users_bp = Blueprint("users", __name__, url_prefix="/users")


def _role(value) -> str:
    role = value or Role.EMPLOYEE
    if role not in Role.ALL:
        raise ValidationError(f"Unknown role '{role}'", field="role")
    return role


def _department_id(value) -> int | None:
    department_id = parse_optional_int(value, field="department_id")
    if department_id is not None and db.session.get(Department, department_id) is None:
        raise NotFoundError("Department", department_id)
    return department_id


def _audit_safe(user: User) -> dict:
    snapshot = serialize_model(user)
    snapshot.pop("password_hash", None)
    return snapshot


# ---------------------------------------------------------------------
# LIST USERS
# ---------------------------------------------------------------------

@users_bp.route("", methods=["GET"])
@login_required
@admin_required
def list_users():
    users = User.query.order_by(User.username.asc()).all()
    return jsonify([u.to_dict() for u in users])


# ---------------------------------------------------------------------
# CREATE USER
# ---------------------------------------------------------------------

@users_bp.route("", methods=["POST"])
@login_required
@admin_required
def create_user():
    """Required: username, password, full_name."""
    data = json_payload()
    username = (data.get("username") or "").strip()
    password = (data.get("password") or "").strip()
    full_name = (data.get("full_name") or "").strip()
    if not username or not password or not full_name:
        raise ValidationError("Username, password and full name are required", field="username")

    try:
        with unit_of_work():
            user = User(
                username=username,
                full_name=full_name,
                email=(data.get("email") or "").strip() or None,
                company_number=(data.get("company_number") or "").strip() or None,
                role=_role(data.get("role")),
                department_id=_department_id(data.get("department_id")),
                is_active=True,
            )
            user.set_password(password)
            db.session.add(user)
            db.session.flush()
            record(current_user, "USER_CREATED", entity=user, after=_audit_safe(user))
    except IntegrityError:
        raise ValidationError(f"Username '{username}' (or its email/company number) already exists", field="username")

    return jsonify(user.to_dict()), 201


# ---------------------------------------------------------------------
# EDIT USER
# ---------------------------------------------------------------------

@users_bp.route("/<int:user_id>", methods=["PATCH"])
@login_required
@admin_required
def edit_user(user_id: int):
    data = json_payload()
    with unit_of_work():
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        before = _audit_safe(user)

        if "full_name" in data:
            user.full_name = (data.get("full_name") or "").strip() or user.full_name
        if "role" in data:
            user.role = _role(data.get("role"))
        if "department_id" in data:
            user.department_id = _department_id(data.get("department_id"))
        if "is_active" in data:
            is_active = parse_bool(data.get("is_active"), field="is_active")
            if not is_active and user.id == current_user.id:
                raise ValidationError("You cannot deactivate your own account", field="is_active")
            user.is_active = is_active
        if data.get("password"):
            user.set_password(str(data["password"]).strip())

        db.session.flush()
        record(current_user, "USER_UPDATED", entity=user, before=before, after=_audit_safe(user))

    return jsonify(user.to_dict())
