"""
expenseflow/ledger.py

Budget ledger for departments and projects.

Available budget of an owner:

    base + budget_adjustments
         + monthly bonus (departments only, while active)
         + sum of signed allocation / deallocation amounts

Every reservation, restoration and adjustment appends one BudgetLedgerEntry
carrying the running balance, and refreshes the owner's materialised
`available_budget` column.

IMPORTANT:
- These functions never commit. They run inside the caller's unit_of_work(),
  so the ledger row commits together with the step/status change that caused it.
- The owner row is read FOR UPDATE before any balance is computed; two
  concurrent reservations against the same owner serialise on that lock.
- check_for_trip() and reserve() use the same formula. A check that says
  "can approve" is followed by a reservation that succeeds, given no
  interleaving write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import func

from . import audit
from .errors import BudgetExceededError, NotFoundError, ValidationError
from .extensions import db
from .models import (
    BudgetLedgerEntry,
    Department,
    LedgerTransaction,
    OwnerKind,
    Project,
    utcnow,
)
from .utils import money

logger = logging.getLogger(__name__)

_OWNER_MODELS = {
    OwnerKind.DEPARTMENT: Department,
    OwnerKind.PROJECT: Project,
}

TRIP_REFERENCE = "trip"


@dataclass
class BudgetCheck:
    can_approve: bool
    excess: Decimal
    info: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "can_approve": self.can_approve,
            "excess": str(self.excess),
            "info": {k: (str(v) if isinstance(v, Decimal) else v) for k, v in self.info.items()},
        }


# ---------------------------------------------------------------------
# Owner helpers
# ---------------------------------------------------------------------
def owner_kind_of(owner) -> str:
    return OwnerKind.PROJECT if isinstance(owner, Project) else OwnerKind.DEPARTMENT


def _owner_filter(owner_kind: str, owner_id: int):
    if owner_kind == OwnerKind.PROJECT:
        return BudgetLedgerEntry.project_id == owner_id
    return BudgetLedgerEntry.department_id == owner_id


def load_owner(owner_kind: str, owner_id: int, lock: bool = False):
    """Fetch a Department/Project; FOR UPDATE when lock=True."""
    model = _OWNER_MODELS.get(owner_kind)
    if model is None:
        raise ValidationError(f"Unknown budget owner kind '{owner_kind}'", field="owner_kind")
    query = model.query.filter(model.id == owner_id)
    if lock:
        query = query.with_for_update().populate_existing()
    owner = query.first()
    if owner is None:
        raise NotFoundError(model.__name__, owner_id)
    return owner


def _base(owner) -> Decimal:
    if isinstance(owner, Project):
        return money(owner.original_budget)
    return money(owner.budget)


def _active_bonus(owner, at: Optional[datetime] = None) -> Decimal:
    if isinstance(owner, Department) and owner.bonus_is_active(at):
        return money(owner.monthly_budget_bonus)
    return Decimal("0.00")


def _net_allocations(owner_kind: str, owner_id: int) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(BudgetLedgerEntry.amount), 0))
        .filter(_owner_filter(owner_kind, owner_id))
        .filter(BudgetLedgerEntry.transaction_type.in_((LedgerTransaction.ALLOCATION, LedgerTransaction.DEALLOCATION)))
        .scalar()
    )
    return money(total)


def available_balance(owner, at: Optional[datetime] = None) -> Decimal:
    """Available budget of a Department or Project right now."""
    kind = owner_kind_of(owner)
    return money(
        _base(owner)
        + money(owner.budget_adjustments)
        + _active_bonus(owner, at)
        + _net_allocations(kind, owner.id)
    )


def _append(owner, transaction_type: str, amount: Decimal, *, actor=None,
            reference_type: Optional[str] = None, reference_id: Optional[int] = None,
            description: Optional[str] = None) -> BudgetLedgerEntry:
    """Add a ledger row for owner and refresh its materialised balance."""
    kind = owner_kind_of(owner)
    entry = BudgetLedgerEntry(
        owner_kind=kind,
        department_id=owner.id if kind == OwnerKind.DEPARTMENT else None,
        project_id=owner.id if kind == OwnerKind.PROJECT else None,
        transaction_type=transaction_type,
        amount=money(amount),
        running_balance=Decimal("0.00"),
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        created_by=getattr(actor, "id", None),
    )
    # running balance must include the new row itself
    if transaction_type in (LedgerTransaction.ALLOCATION, LedgerTransaction.DEALLOCATION):
        balance = available_balance(owner) + money(amount)
    else:
        balance = available_balance(owner)
    entry.running_balance = balance
    owner.available_budget = balance
    db.session.add(entry)
    db.session.flush()
    return entry


# ---------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------
def reservation_for(trip_id: int) -> Decimal:
    """Net amount currently reserved for a trip (0 when nothing is held)."""
    total = (
        db.session.query(func.coalesce(func.sum(BudgetLedgerEntry.amount), 0))
        .filter(BudgetLedgerEntry.reference_type == TRIP_REFERENCE)
        .filter(BudgetLedgerEntry.reference_id == trip_id)
        .filter(BudgetLedgerEntry.transaction_type.in_((LedgerTransaction.ALLOCATION, LedgerTransaction.DEALLOCATION)))
        .scalar()
    )
    return money(-money(total))


def check_for_trip(owner_kind: str, owner_id: int, proposed_cost, exclude_trip_id: Optional[int] = None) -> BudgetCheck:
    """
    Would reserving proposed_cost keep the owner's budget non-negative?

    exclude_trip_id: a trip whose own outstanding reservation should be
    treated as released (re-checking an already reserved trip).
    """
    owner = load_owner(owner_kind, owner_id)
    cost = money(proposed_cost)
    available = available_balance(owner)
    if exclude_trip_id is not None:
        available = money(available + reservation_for(exclude_trip_id))

    remaining = money(available - cost)
    excess = money(-remaining) if remaining < 0 else Decimal("0.00")
    info = {
        "owner_kind": owner_kind,
        "owner_id": owner_id,
        "owner_name": owner.name,
        "available": available,
        "cost": cost,
        "remaining_after": remaining,
    }
    return BudgetCheck(can_approve=remaining >= 0, excess=excess, info=info)


def reserve(owner_kind: str, owner_id: int, amount, reference: int, actor=None,
            allow_negative: bool = False) -> Decimal:
    """
    Reserve amount against the owner for trip `reference`.

    Raises BudgetExceededError when the balance would go negative, unless
    allow_negative (urgent override). Returns the new available balance.
    """
    owner = load_owner(owner_kind, owner_id, lock=True)
    amount = money(amount)
    if amount < 0:
        raise ValidationError("Reservation amount cannot be negative", field="amount")

    available = available_balance(owner)
    remaining = money(available - amount)
    if remaining < 0 and not allow_negative:
        raise BudgetExceededError(money(-remaining), owner_kind=owner_kind, owner_id=owner_id, available=available)

    description = f"Trip request #{reference} approved"
    if remaining < 0:
        description += " (urgent override)"
        logger.warning("Urgent override: %s %s goes to %s for trip %s", owner_kind, owner_id, remaining, reference)

    entry = _append(
        owner,
        LedgerTransaction.ALLOCATION,
        -amount,
        actor=actor,
        reference_type=TRIP_REFERENCE,
        reference_id=reference,
        description=description,
    )
    audit.record(
        actor,
        "BUDGET_RESERVED",
        {"owner_kind": owner_kind, "owner_id": owner_id, "trip_request_id": reference,
         "amount": amount, "balance": entry.running_balance, "override": remaining < 0},
        entity=entry,
    )
    logger.info("Reserved %s on %s %s for trip %s (balance %s)", amount, owner_kind, owner_id, reference, entry.running_balance)
    return entry.running_balance


def restore(owner_kind: str, owner_id: int, amount, reference: int, actor=None,
            description: Optional[str] = None) -> Decimal:
    """Release a reservation (rejection/cancellation). Returns the new balance."""
    owner = load_owner(owner_kind, owner_id, lock=True)
    amount = money(amount)
    if amount <= 0:
        return available_balance(owner)

    entry = _append(
        owner,
        LedgerTransaction.DEALLOCATION,
        amount,
        actor=actor,
        reference_type=TRIP_REFERENCE,
        reference_id=reference,
        description=description or f"Trip request #{reference} released",
    )
    audit.record(
        actor,
        "BUDGET_RESTORED",
        {"owner_kind": owner_kind, "owner_id": owner_id, "trip_request_id": reference,
         "amount": amount, "balance": entry.running_balance},
        entity=entry,
    )
    logger.info("Restored %s on %s %s for trip %s (balance %s)", amount, owner_kind, owner_id, reference, entry.running_balance)
    return entry.running_balance


# ---------------------------------------------------------------------
# Adjustments & bonuses
# ---------------------------------------------------------------------
def adjust(owner_kind: str, owner_id: int, amount, actor, reference: Optional[int] = None,
           description: Optional[str] = None, reference_type: str = "admin_request") -> Decimal:
    """Administrative increase (positive) or decrease (negative) of an owner's budget."""
    amount = money(amount)
    if amount == 0:
        raise ValidationError("Adjustment amount cannot be zero", field="amount")

    owner = load_owner(owner_kind, owner_id, lock=True)
    before = available_balance(owner)
    owner.budget_adjustments = money(money(owner.budget_adjustments) + amount)

    entry = _append(
        owner,
        LedgerTransaction.ADJUSTMENT,
        amount,
        actor=actor,
        reference_type=reference_type if reference is not None else None,
        reference_id=reference,
        description=description or ("Budget increase" if amount > 0 else "Budget decrease"),
    )
    audit.record(
        actor,
        "BUDGET_ADJUSTED",
        {"owner_kind": owner_kind, "owner_id": owner_id, "amount": amount,
         "before": before, "after": entry.running_balance},
        entity=owner,
    )
    return entry.running_balance


def record_initial(project: Project, actor=None) -> BudgetLedgerEntry:
    """Opening ledger row of a newly created project."""
    db.session.flush()
    return _append(
        project,
        LedgerTransaction.INITIAL,
        money(project.original_budget),
        actor=actor,
        reference_type="project",
        reference_id=project.id,
        description="Initial project budget",
    )


def grant_monthly_bonus(department_id: int, amount, actor, period_days: Optional[int] = None) -> Department:
    """
    Temporary department increase, active until the reset date.

    A grant replaces a bonus that is still active; the ledger row carries
    only the difference so the signed amounts follow the running balance.
    """
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Monthly bonus must be positive", field="amount")
    if period_days is None:
        period_days = int(current_app.config.get("MONTHLY_BONUS_PERIOD_DAYS", 31))

    department = load_owner(OwnerKind.DEPARTMENT, department_id, lock=True)
    before = audit.serialize_model(department)
    previous = _active_bonus(department)
    delta = money(amount - previous)

    department.monthly_budget_bonus = amount
    department.monthly_budget_bonus_reset_at = utcnow() + timedelta(days=period_days)

    if delta != 0:
        _append(
            department,
            LedgerTransaction.ADJUSTMENT,
            delta,
            actor=actor,
            description=f"Monthly budget bonus {amount} granted until {department.monthly_budget_bonus_reset_at.date()}",
        )
    audit.record(actor, "MONTHLY_BONUS_GRANTED", {"amount": amount, "previous": previous, "delta": delta},
                 entity=department, before=before, after=audit.serialize_model(department))
    return department


def reset_monthly_bonus(department_id: Optional[int] = None, actor=None) -> int:
    """
    Clear active monthly bonuses (one department or all). Returns how many were reset.

    An expired bonus no longer counts in the balance and is left alone.
    """
    query = Department.query.filter(Department.monthly_budget_bonus != 0)
    if department_id is not None:
        query = query.filter(Department.id == department_id)

    now = utcnow()
    count = 0
    for department in query.with_for_update().order_by(Department.id).all():
        if not department.bonus_is_active(now):
            continue
        bonus = money(department.monthly_budget_bonus)
        department.monthly_budget_bonus = Decimal("0.00")
        department.monthly_budget_bonus_reset_at = None
        department.monthly_budget_bonus_last_reset_at = now
        _append(department, LedgerTransaction.ADJUSTMENT, -bonus, actor=actor,
                description="Monthly budget bonus reset")
        audit.record(actor, "MONTHLY_BONUS_RESET", {"amount": bonus}, entity=department)
        count += 1

    logger.info("Monthly budget bonus reset for %s department(s)", count)
    return count


# ---------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------
def history(owner_kind: str, owner_id: int) -> list[BudgetLedgerEntry]:
    """Ledger rows of one owner, newest first."""
    load_owner(owner_kind, owner_id)
    return (
        BudgetLedgerEntry.query
        .filter(_owner_filter(owner_kind, owner_id))
        .order_by(BudgetLedgerEntry.created_at.desc(), BudgetLedgerEntry.id.desc())
        .all()
    )


def budget_status(owner_kind: str, owner_id: int) -> dict:
    owner = load_owner(owner_kind, owner_id)
    allocated = -_net_allocations(owner_kind, owner_id)
    return {
        "owner_kind": owner_kind,
        "owner_id": owner.id,
        "name": owner.name,
        "base": str(_base(owner)),
        "adjustments": str(money(owner.budget_adjustments)),
        "monthly_bonus": str(_active_bonus(owner)),
        "allocated": str(money(allocated)),
        "available": str(available_balance(owner)),
    }


# ---------------------------------------------------------------------
# Project lifecycle
# ---------------------------------------------------------------------
def activate_project(project_id: int, actor) -> Project:
    """Re-activate a project; refused while it has no available budget."""
    project = load_owner(OwnerKind.PROJECT, project_id, lock=True)
    available = available_balance(project)
    if available <= 0:
        raise ValidationError(
            f"Project '{project.name}' has no available budget ({available}) and cannot be activated",
            field="available_budget",
            available=available,
        )
    before = audit.serialize_model(project)
    project.is_active = True
    db.session.flush()
    audit.record(actor, "PROJECT_ACTIVATED", entity=project, before=before, after=audit.serialize_model(project))
    return project


def expire_projects(today: Optional[date] = None, actor=None) -> int:
    """Deactivate active projects whose expiry date has passed. Returns the count."""
    today = today or utcnow().date()
    expired = (
        Project.query
        .filter(Project.is_active.is_(True))
        .filter(Project.expiry_date.isnot(None))
        .filter(Project.expiry_date < today)
        .order_by(Project.id)
        .all()
    )
    for project in expired:
        project.is_active = False
        audit.record(actor, "PROJECT_EXPIRED", {"expiry_date": project.expiry_date}, entity=project)
    if expired:
        db.session.flush()
    logger.info("Expired %s project(s) as of %s", len(expired), today)
    return len(expired)
