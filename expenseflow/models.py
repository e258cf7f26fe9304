"""
Trip Expense Approvals – Domain Models

Organisation:
- User (role: Employee / Manager / Finance / Admin)
- Department (base budget, adjustments, monthly bonus, up to 3 managers)
- Project (original budget, adjustments, up to 2 managers, owning department)

Requests:
- TripRequest + WorkflowStep (ordered approval chain, generated once)
- AdminRequest (single Finance decision)
- StatusHistoryEntry (ordered, append-only, owned by its request)

Budget & audit:
- KmRate (effective window [from, to))
- BudgetLedgerEntry (append-only, both owner kinds)
- AuditLog (append-only)
- ManagerDelegation (time-bounded approver delegation)

IMPORTANT:
- Request status is written only by the approval state machine (approvals.py).
- Ledger, history and audit rows are append-only; ORM listeners below refuse
  UPDATE/DELETE on them.
- Requests and budget owners carry a version column (optimistic locking).
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask_login import UserMixin
from sqlalchemy import event
from sqlalchemy.orm import object_session
from werkzeug.security import generate_password_hash, check_password_hash

from .errors import ImmutableRecordError
from .extensions import db


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def utcnow() -> datetime:
    """Naive UTC timestamp (stored the same way on SQLite and PostgreSQL)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_decimal(value) -> Decimal:
    """Convert Numeric/None to Decimal safely."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value))


def _money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _money_str(value) -> str | None:
    if value is None:
        return None
    return str(_money(_to_decimal(value)))


def _iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat()


# ---------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------
class Role:
    EMPLOYEE = "Employee"
    MANAGER = "Manager"
    FINANCE = "Finance"
    ADMIN = "Admin"

    ALL = (EMPLOYEE, MANAGER, FINANCE, ADMIN)


class RequestStatus:
    PENDING_DEPARTMENT = "Pending Department Approval"
    PENDING_PROJECT = "Pending Project Approval"
    PENDING_FINANCE = "Pending Finance Approval"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PAID = "Paid"
    CANCELLED = "Cancelled"

    ALL = (PENDING_DEPARTMENT, PENDING_PROJECT, PENDING_FINANCE, APPROVED, REJECTED, PAID, CANCELLED)
    TERMINAL = frozenset({APPROVED, REJECTED, PAID, CANCELLED})


class StepType:
    DEPARTMENT_MANAGER = "Department Manager"
    SECOND_DEPARTMENT_MANAGER = "Second Department Manager"
    TERTIARY_DEPARTMENT_MANAGER = "Tertiary Department Manager"
    PROJECT_MANAGER = "Project Manager"
    SECOND_PROJECT_MANAGER = "Second Project Manager"
    FINANCE_APPROVAL = "Finance Approval"
    ADMIN_REVIEW = "Admin Review"

    ALL = (
        DEPARTMENT_MANAGER,
        SECOND_DEPARTMENT_MANAGER,
        TERTIARY_DEPARTMENT_MANAGER,
        PROJECT_MANAGER,
        SECOND_PROJECT_MANAGER,
        FINANCE_APPROVAL,
        ADMIN_REVIEW,
    )
    DEPARTMENT = frozenset({DEPARTMENT_MANAGER, SECOND_DEPARTMENT_MANAGER, TERTIARY_DEPARTMENT_MANAGER})
    PROJECT = frozenset({PROJECT_MANAGER, SECOND_PROJECT_MANAGER})


class StepStatus:
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    SKIPPED = "Skipped"


class TripType:
    TICKET = "Ticket"
    PLANNED = "Planned"
    URGENT = "Urgent"

    ALL = (TICKET, PLANNED, URGENT)


class CostMethod:
    DIRECT = "direct"
    KM = "km"
    DESTINATION = "destination"

    ALL = (DIRECT, KM, DESTINATION)


class OwnerKind:
    DEPARTMENT = "department"
    PROJECT = "project"

    ALL = (DEPARTMENT, PROJECT)


class LedgerTransaction:
    INITIAL = "initial"
    ADJUSTMENT = "adjustment"
    ALLOCATION = "allocation"
    DEALLOCATION = "deallocation"


class AdminRequestType:
    BUDGET_INCREASE = "budget_increase"
    COST_ADJUSTMENT = "cost_adjustment"
    OTHER = "other"

    ALL = (BUDGET_INCREASE, COST_ADJUSTMENT, OTHER)


# ---------------------------------------------------------------------
# Users & organisation
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """System login user. `role` is the base role; the acting role is per call."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=True)
    company_number = db.Column(db.String(20), unique=True, nullable=True)

    role = db.Column(db.String(20), nullable=False, default=Role.EMPLOYEE, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    department = db.relationship("Department", foreign_keys=[department_id], backref="members")

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def available_roles(self) -> list[str]:
        """Managers may switch to Employee to file their own trips."""
        if self.role == Role.MANAGER:
            return [Role.MANAGER, Role.EMPLOYEE]
        return [self.role]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "role": self.role,
            "department_id": self.department_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.username}>"


class Department(db.Model):
    """Budget owner for department-routed trips."""

    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), unique=True, nullable=False)

    budget = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    budget_adjustments = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    # Temporary increase, active until monthly_budget_bonus_reset_at
    monthly_budget_bonus = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    monthly_budget_bonus_reset_at = db.Column(db.DateTime, nullable=True)
    # when an active bonus was last cleared by reset_monthly_bonus()
    monthly_budget_bonus_last_reset_at = db.Column(db.DateTime, nullable=True)

    # Materialised by the ledger after every entry
    available_budget = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    second_manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    third_manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    third_manager_required = db.Column(db.Boolean, default=False, nullable=False)

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    manager = db.relationship("User", foreign_keys=[manager_id])
    second_manager = db.relationship("User", foreign_keys=[second_manager_id])
    third_manager = db.relationship("User", foreign_keys=[third_manager_id])

    def bonus_is_active(self, at: datetime | None = None) -> bool:
        at = at or utcnow()
        if _to_decimal(self.monthly_budget_bonus) == Decimal("0.00"):
            return False
        return self.monthly_budget_bonus_reset_at is None or self.monthly_budget_bonus_reset_at > at

    def manager_ids(self) -> set[int]:
        return {uid for uid in (self.manager_id, self.second_manager_id, self.third_manager_id) if uid}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "budget": _money_str(self.budget),
            "budget_adjustments": _money_str(self.budget_adjustments),
            "monthly_budget_bonus": _money_str(self.monthly_budget_bonus),
            "monthly_budget_bonus_reset_at": _iso(self.monthly_budget_bonus_reset_at),
            "monthly_budget_bonus_last_reset_at": _iso(self.monthly_budget_bonus_last_reset_at),
            "available_budget": _money_str(self.available_budget),
            "manager_id": self.manager_id,
            "second_manager_id": self.second_manager_id,
            "third_manager_id": self.third_manager_id,
            "third_manager_required": self.third_manager_required,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Department {self.name}>"


class Project(db.Model):
    """Budget owner for project-routed trips. original_budget is never mutated."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), unique=True, nullable=False)

    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    original_budget = db.Column(db.Numeric(12, 2), nullable=False)
    budget_adjustments = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    available_budget = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    second_manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    expiry_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    department = db.relationship("Department", backref=db.backref("projects", lazy=True))
    manager = db.relationship("User", foreign_keys=[manager_id])
    second_manager = db.relationship("User", foreign_keys=[second_manager_id])

    def manager_ids(self) -> set[int]:
        return {uid for uid in (self.manager_id, self.second_manager_id) if uid}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "department_id": self.department_id,
            "original_budget": _money_str(self.original_budget),
            "budget_adjustments": _money_str(self.budget_adjustments),
            "available_budget": _money_str(self.available_budget),
            "manager_id": self.manager_id,
            "second_manager_id": self.second_manager_id,
            "is_active": self.is_active,
            "expiry_date": _iso(self.expiry_date),
        }

    def __repr__(self):
        return f"<Project {self.name}>"


class ManagerDelegation(db.Model):
    """Time-bounded delegation of approval capabilities from one manager to another user."""

    __tablename__ = "manager_delegations"

    id = db.Column(db.Integer, primary_key=True)

    delegator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    delegate_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # comma separated, e.g. "approve_trips"
    capabilities = db.Column(db.String(255), nullable=False, default="approve_trips")

    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    delegator = db.relationship("User", foreign_keys=[delegator_id])
    delegate = db.relationship("User", foreign_keys=[delegate_id])

    def capability_set(self) -> set[str]:
        return {c.strip() for c in (self.capabilities or "").split(",") if c.strip()}

    def covers(self, capability: str, at: datetime) -> bool:
        return self.starts_at <= at < self.ends_at and capability in self.capability_set()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delegator_id": self.delegator_id,
            "delegate_id": self.delegate_id,
            "capabilities": sorted(self.capability_set()),
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
        }


# ---------------------------------------------------------------------
# Rates
# ---------------------------------------------------------------------
class KmRate(db.Model):
    """Per-kilometer rate valid over [effective_from, effective_to)."""

    __tablename__ = "km_rates"

    id = db.Column(db.Integer, primary_key=True)

    rate_value = db.Column(db.Numeric(10, 4), nullable=False)
    effective_from = db.Column(db.Date, nullable=False, index=True)
    effective_to = db.Column(db.Date, nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def covers(self, day: date) -> bool:
        if day < self.effective_from:
            return False
        return self.effective_to is None or day < self.effective_to

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rate_value": str(_to_decimal(self.rate_value)),
            "effective_from": _iso(self.effective_from),
            "effective_to": _iso(self.effective_to),
            "description": self.description,
        }


# ---------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------
class TripRequest(db.Model):
    __tablename__ = "trip_requests"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=True, index=True)

    trip_date = db.Column(db.Date, nullable=False, index=True)
    origin = db.Column(db.String(255), nullable=False)
    destination = db.Column(db.String(255), nullable=False)
    purpose = db.Column(db.Text, nullable=True)
    trip_type = db.Column(db.String(20), nullable=False, default=TripType.PLANNED, index=True)
    ticket_no = db.Column(db.String(100), nullable=True)

    # Source of truth for money; kilometers/rate only derive it
    cost = db.Column(db.Numeric(12, 2), nullable=False)
    cost_method = db.Column(db.String(20), nullable=False, default=CostMethod.DIRECT)
    kilometers = db.Column(db.Numeric(10, 2), nullable=True)
    km_rate_id = db.Column(db.Integer, db.ForeignKey("km_rates.id", ondelete="SET NULL"), nullable=True, index=True)
    km_rate_value = db.Column(db.Numeric(10, 4), nullable=True)
    cost_updated_at = db.Column(db.DateTime, nullable=True)
    cost_updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    status = db.Column(db.String(40), nullable=False, index=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    last_updated_at = db.Column(db.DateTime, nullable=True)
    last_updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    paid = db.Column(db.Boolean, default=False, nullable=False, index=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    paid_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    requester = db.relationship("User", foreign_keys=[user_id])
    department = db.relationship("Department", foreign_keys=[department_id])
    project = db.relationship("Project", foreign_keys=[project_id])
    km_rate = db.relationship("KmRate", foreign_keys=[km_rate_id])

    steps = db.relationship(
        "WorkflowStep",
        back_populates="trip_request",
        order_by="WorkflowStep.step_order",
        cascade="all, delete-orphan",
    )
    history = db.relationship(
        "StatusHistoryEntry",
        back_populates="trip_request",
        order_by="StatusHistoryEntry.id",
    )

    @property
    def is_urgent(self) -> bool:
        return self.trip_type == TripType.URGENT

    @property
    def is_terminal(self) -> bool:
        return self.status in RequestStatus.TERMINAL

    @property
    def owner(self) -> tuple[str, int] | tuple[None, None]:
        """Budget owner: the project if routed by project, else the department."""
        if self.project_id:
            return OwnerKind.PROJECT, self.project_id
        if self.department_id:
            return OwnerKind.DEPARTMENT, self.department_id
        return None, None

    def to_dict(self, with_steps: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "department_id": self.department_id,
            "project_id": self.project_id,
            "trip_date": _iso(self.trip_date),
            "origin": self.origin,
            "destination": self.destination,
            "purpose": self.purpose,
            "trip_type": self.trip_type,
            "ticket_no": self.ticket_no,
            "cost": _money_str(self.cost),
            "cost_method": self.cost_method,
            "kilometers": _money_str(self.kilometers),
            "km_rate_id": self.km_rate_id,
            "km_rate_value": str(_to_decimal(self.km_rate_value)) if self.km_rate_value is not None else None,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
            "paid": self.paid,
            "paid_at": _iso(self.paid_at),
            "paid_by": self.paid_by,
            "status_history": [h.to_dict() for h in self.history],
        }
        if with_steps:
            data["workflow_steps"] = [s.to_dict() for s in self.steps]
        return data


class AdminRequest(db.Model):
    """Administrative request. Routed directly to a single Finance decision."""

    __tablename__ = "admin_requests"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    subject = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    request_type = db.Column(db.String(40), nullable=False, default=AdminRequestType.OTHER)

    trip_request_id = db.Column(db.Integer, db.ForeignKey("trip_requests.id", ondelete="SET NULL"), nullable=True, index=True)
    requested_amount = db.Column(db.Numeric(12, 2), nullable=True)
    target_type = db.Column(db.String(20), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(40), nullable=False, default=RequestStatus.PENDING_FINANCE, index=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    last_updated_at = db.Column(db.DateTime, nullable=True)
    last_updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    paid = db.Column(db.Boolean, default=False, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    paid_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    requester = db.relationship("User", foreign_keys=[user_id])
    trip_request = db.relationship("TripRequest", foreign_keys=[trip_request_id])
    history = db.relationship(
        "StatusHistoryEntry",
        back_populates="admin_request",
        order_by="StatusHistoryEntry.id",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in RequestStatus.TERMINAL

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subject": self.subject,
            "description": self.description,
            "request_type": self.request_type,
            "trip_request_id": self.trip_request_id,
            "requested_amount": _money_str(self.requested_amount),
            "target_type": self.target_type,
            "target_id": self.target_id,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
            "paid": self.paid,
            "paid_at": _iso(self.paid_at),
            "paid_by": self.paid_by,
            "status_history": [h.to_dict() for h in self.history],
        }


class WorkflowStep(db.Model):
    """One approval step. Created in bulk with its trip; mutates exactly once."""

    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)

    trip_request_id = db.Column(
        db.Integer,
        db.ForeignKey("trip_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    step_type = db.Column(db.String(40), nullable=False)

    # NULL for Finance Approval (any Finance user)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    status = db.Column(db.String(20), nullable=False, default=StepStatus.PENDING, index=True)
    is_required = db.Column(db.Boolean, nullable=False, default=True)

    decided_at = db.Column(db.DateTime, nullable=True)
    decided_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    trip_request = db.relationship("TripRequest", back_populates="steps")
    approver = db.relationship("User", foreign_keys=[approver_id])

    __table_args__ = (
        db.UniqueConstraint("trip_request_id", "step_order", name="uq_workflow_step_order"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trip_request_id": self.trip_request_id,
            "step_order": self.step_order,
            "step_type": self.step_type,
            "approver_id": self.approver_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "status": self.status,
            "is_required": self.is_required,
            "decided_at": _iso(self.decided_at),
            "decided_by": self.decided_by,
            "rejection_reason": self.rejection_reason,
        }


class StatusHistoryEntry(db.Model):
    """Append-only status change record of a trip or administrative request."""

    __tablename__ = "status_history"

    id = db.Column(db.Integer, primary_key=True)

    trip_request_id = db.Column(db.Integer, db.ForeignKey("trip_requests.id", ondelete="CASCADE"), nullable=True, index=True)
    admin_request_id = db.Column(db.Integer, db.ForeignKey("admin_requests.id", ondelete="CASCADE"), nullable=True, index=True)

    status = db.Column(db.String(80), nullable=False)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    role = db.Column(db.String(20), nullable=True)
    reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    trip_request = db.relationship("TripRequest", back_populates="history")
    admin_request = db.relationship("AdminRequest", back_populates="history")

    __table_args__ = (
        db.CheckConstraint(
            "(trip_request_id IS NULL) <> (admin_request_id IS NULL)",
            name="ck_status_history_single_owner",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "actor_id": self.actor_id,
            "role": self.role,
            "reason": self.reason,
            "timestamp": _iso(self.created_at),
        }


# ---------------------------------------------------------------------
# Ledger & audit
# ---------------------------------------------------------------------
class BudgetLedgerEntry(db.Model):
    """
    Budget history for departments and projects.

    amount is signed: allocation < 0, deallocation > 0, initial > 0,
    adjustment either way. running_balance is the owner's available
    budget right after this entry.
    """

    __tablename__ = "budget_ledger_entries"

    id = db.Column(db.Integer, primary_key=True)

    owner_kind = db.Column(db.String(20), nullable=False, index=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id", ondelete="CASCADE"), nullable=True, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)

    transaction_type = db.Column(db.String(20), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    running_balance = db.Column(db.Numeric(12, 2), nullable=False)

    reference_type = db.Column(db.String(20), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    __table_args__ = (
        db.CheckConstraint(
            "(department_id IS NULL) <> (project_id IS NULL)",
            name="ck_ledger_single_owner",
        ),
    )

    @property
    def owner_id(self) -> int:
        return self.project_id if self.owner_kind == OwnerKind.PROJECT else self.department_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_kind": self.owner_kind,
            "owner_id": self.owner_id,
            "type": self.transaction_type,
            "amount": _money_str(self.amount),
            "running_balance": _money_str(self.running_balance),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "description": self.description,
            "created_by": self.created_by,
            "timestamp": _iso(self.created_at),
        }


class AuditLog(db.Model):
    """Enterprise-grade audit logging."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    action = db.Column(db.String(80), nullable=False, index=True)

    entity_type = db.Column(db.String(50), nullable=True, index=True)
    entity_id = db.Column(db.Integer, nullable=True, index=True)

    details = db.Column(db.JSON, nullable=True)
    before_data = db.Column(db.JSON, nullable=True)
    after_data = db.Column(db.JSON, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("audit_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username_snapshot,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details,
            "before": self.before_data,
            "after": self.after_data,
            "ip_address": self.ip_address,
            "timestamp": _iso(self.created_at),
        }


# ---------------------------------------------------------------------
# Append-only enforcement
# ---------------------------------------------------------------------
def _refuse_update(mapper, connection, target):
    # flush also visits rows that are dirty only through a collection
    if object_session(target).is_modified(target, include_collections=False):
        raise ImmutableRecordError(target.__class__.__name__, target.id)


def _refuse_delete(mapper, connection, target):
    raise ImmutableRecordError(target.__class__.__name__, target.id)


for _model in (BudgetLedgerEntry, StatusHistoryEntry, AuditLog):
    event.listen(_model, "before_update", _refuse_update)
    event.listen(_model, "before_delete", _refuse_delete)
