"""
expenseflow/security.py

Access control helpers for trip expense approvals.

Key rules:
- UI is never trusted; all permission checks are server-side.
- The acting role is explicit: a user whose base role is Manager may act as
  Manager or Employee. Core operations receive the acting role as a parameter;
  the HTTP layer keeps the user's choice in the session and passes it in.
- A workflow step may be decided by its designated approver, by a delegate
  holding an active "approve_trips" delegation from that approver, or by an
  Admin (override). The Finance step has no designated approver; any user
  acting as Finance may decide it.

IMPORTANT:
- authorize_step() is a pure function of (actor, acting role, step, time)
  plus the delegation table. It never mutates the step.
- Decorators must preserve wrapped function metadata to avoid Flask endpoint
  collisions. We use functools.wraps everywhere.
"""

from __future__ import annotations

from datetime import datetime
from functools import wraps
from typing import Any, Callable, Optional

from flask import session
from flask_login import current_user

from .errors import NotAuthorizedError
from .models import ManagerDelegation, Role, StepType, User, WorkflowStep, utcnow

APPROVE_TRIPS = "approve_trips"

SESSION_ROLE_KEY = "acting_role"


# ---------------------------------------------------------------------
# Acting role
# ---------------------------------------------------------------------
def resolve_acting_role(user: User, requested: Optional[str] = None) -> str:
    """Validate the role a user wants to act as; default to the base role."""
    role = requested or user.role
    if role not in user.available_roles():
        raise NotAuthorizedError(
            f"User '{user.username}' cannot act as {role}",
            required_role=role,
            available_roles=user.available_roles(),
        )
    return role


def current_acting_role() -> Optional[str]:
    """Acting role chosen for this login session (None when logged out)."""
    if not current_user.is_authenticated:
        return None
    requested = session.get(SESSION_ROLE_KEY)
    if requested not in current_user.available_roles():
        return current_user.role
    return requested


# ---------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------
def active_delegation(delegator_id: int, delegate_id: int, capability: str = APPROVE_TRIPS,
                      at: Optional[datetime] = None) -> Optional[ManagerDelegation]:
    """Delegation from delegator to delegate covering capability at `at`, if any."""
    at = at or utcnow()
    candidates = (
        ManagerDelegation.query
        .filter(ManagerDelegation.delegator_id == delegator_id)
        .filter(ManagerDelegation.delegate_id == delegate_id)
        .filter(ManagerDelegation.starts_at <= at)
        .filter(ManagerDelegation.ends_at > at)
        .all()
    )
    for delegation in candidates:
        if delegation.covers(capability, at):
            return delegation
    return None


# ---------------------------------------------------------------------
# Step authorisation
# ---------------------------------------------------------------------
def authorize_step(actor: User, step: WorkflowStep, acting_role: Optional[str] = None,
                   at: Optional[datetime] = None) -> str:
    """
    Raise NotAuthorizedError unless actor may decide `step`.

    Returns how the actor qualified: "admin", "finance", "approver" or "delegate".
    """
    if not actor.is_active:
        raise NotAuthorizedError(f"User '{actor.username}' is inactive")

    role = resolve_acting_role(actor, acting_role)

    if role == Role.ADMIN:
        return "admin"

    if step.step_type == StepType.FINANCE_APPROVAL:
        if role != Role.FINANCE:
            raise NotAuthorizedError(
                "Finance approval requires the Finance role",
                required_role=Role.FINANCE,
                step_type=step.step_type,
            )
        return "finance"

    if role != Role.MANAGER:
        raise NotAuthorizedError(
            f"{step.step_type} approval requires acting as Manager",
            required_role=Role.MANAGER,
            step_type=step.step_type,
        )

    if step.approver_id == actor.id:
        return "approver"

    if step.approver_id and active_delegation(step.approver_id, actor.id, APPROVE_TRIPS, at):
        return "delegate"

    raise NotAuthorizedError(
        f"User '{actor.username}' is not the designated approver for {step.step_type}",
        required_role=Role.MANAGER,
        step_type=step.step_type,
        approver_id=step.approver_id,
    )


def require_role(actor: User, acting_role: Optional[str], *roles: str) -> str:
    """Acting role must be one of roles (Admin always passes)."""
    role = resolve_acting_role(actor, acting_role)
    if role == Role.ADMIN or role in roles:
        return role
    raise NotAuthorizedError(
        f"This action requires one of: {', '.join(roles)}",
        required_role=roles[0] if len(roles) == 1 else None,
        allowed_roles=list(roles),
    )


# ---------------------------------------------------------------------
# Route decorators
# ---------------------------------------------------------------------
def roles_required(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator factory: the session's acting role must be one of roles.

    Admin always passes. Use below @login_required.
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            require_role(current_user, current_acting_role(), *roles)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def admin_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: admin-only."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        if not (current_user.is_authenticated and current_user.is_admin):
            raise NotAuthorizedError("Administrator access required", required_role=Role.ADMIN)
        return view_func(*args, **kwargs)

    return wrapper
