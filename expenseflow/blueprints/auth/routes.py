"""
Authentication Routes

Provides:
- /auth/csrf-token
- /auth/login
- /auth/logout
- /auth/me
- /auth/acting-role (Manager <-> Employee role switching)
- /auth/seed-admin (first system bootstrap)

Rules:
- Only active users may log in.
- The acting role lives in the session and is passed explicitly to every
  core operation; it can only be one of the user's available roles.
"""

from flask import Blueprint, jsonify, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...audit import record
from ...errors import NotAuthorizedError, ValidationError
from ...extensions import db
from ...models import Role, User
from ...security import SESSION_ROLE_KEY, current_acting_role, resolve_acting_role
from ...utils import json_payload, unit_of_work


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _session_payload(user: User) -> dict:
    return {
        "user": user.to_dict(),
        "acting_role": current_acting_role(),
        "available_roles": user.available_roles(),
    }


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    """Token for the X-CSRFToken header of mutating calls."""
    return jsonify({"csrf_token": generate_csrf()})


# ============================================================
# LOGIN / LOGOUT
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Authenticate a user. Only active users may log in."""
    data = json_payload()
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password):
        raise NotAuthorizedError("Invalid username or password")
    if not user.is_active:
        raise NotAuthorizedError("Account is inactive")

    login_user(user)
    session[SESSION_ROLE_KEY] = user.role
    return jsonify(_session_payload(user))


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """Log out the current user."""
    session.pop(SESSION_ROLE_KEY, None)
    logout_user()
    return jsonify({"ok": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify(_session_payload(current_user))


@auth_bp.route("/acting-role", methods=["POST"])
@login_required
def switch_role():
    """Switch between the roles this user may act as."""
    role = resolve_acting_role(current_user, json_payload().get("role"))
    session[SESSION_ROLE_KEY] = role
    return jsonify(_session_payload(current_user))


# ============================================================
# SEED FIRST ADMIN (BOOTSTRAP)
# ============================================================

@auth_bp.route("/seed-admin", methods=["POST"])
def seed_admin():
    """
    Bootstrap the FIRST admin of the system.

    If ANY user already exists the call is refused.
    """
    if User.query.count() > 0:
        raise NotAuthorizedError("Users already exist; log in as an administrator instead")

    data = json_payload()
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    if not username or not password:
        raise ValidationError("Username and password are required", field="username")

    with unit_of_work():
        user = User(
            username=username,
            full_name=(data.get("full_name") or "System Administrator").strip(),
            role=Role.ADMIN,
            is_active=True,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.flush()
        record(user, "ADMIN_BOOTSTRAPPED", entity=user)

    return jsonify(user.to_dict()), 201
