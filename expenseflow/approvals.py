"""
expenseflow/approvals.py

Approval state machine for trip and administrative requests.

A decision, in ONE unit of work:
1. lock the request and its steps, load the head (lowest-order Pending) step
2. authorise the actor for that step (designated approver / delegate / Finance / Admin)
3. reject: mark the step Rejected, skip the rest, restore any reservation in full
   approve: reserve budget if this is the reservation step, then mark it Approved
4. recompute the request status from the steps
5. append one status history entry and one audit row

Reservation point:
- project trips reserve when the Project Manager approves
- department trips reserve when Finance approves
Urgent trips bypass the budget check; the allocation row is still written,
even when it takes the owner below zero.

IMPORTANT:
- Only this module writes request status.
- Any error aborts the whole decision (see utils.unit_of_work()); the step
  stays Pending and no ledger/history/audit row is kept.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from . import audit, ledger, rates, workflow
from .errors import (
    ExpenseFlowError,
    InvalidStatusTransitionError,
    NoPendingStepError,
    NotAuthorizedError,
    NotFoundError,
    SelfApprovalError,
    ValidationError,
)
from .extensions import db
from .models import (
    AdminRequest,
    AdminRequestType,
    CostMethod,
    Department,
    OwnerKind,
    Project,
    RequestStatus,
    Role,
    StatusHistoryEntry,
    StepStatus,
    StepType,
    TripRequest,
    TripType,
    User,
    WorkflowStep,
    utcnow,
)
from .security import authorize_step, require_role, resolve_acting_role
from .utils import money, parse_date, parse_decimal, parse_optional_int, unit_of_work

logger = logging.getLogger(__name__)

URGENT_BYPASS_NOTE = "Department Approval Bypassed - Urgent Trip"


# ---------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------
def _lock_trip(request_id: int) -> TripRequest:
    trip = (
        TripRequest.query
        .filter(TripRequest.id == request_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if trip is None:
        raise NotFoundError("TripRequest", request_id)
    return trip


def _lock_steps(trip: TripRequest) -> list[WorkflowStep]:
    return (
        WorkflowStep.query
        .filter(WorkflowStep.trip_request_id == trip.id)
        .order_by(WorkflowStep.step_order)
        .with_for_update()
        .populate_existing()
        .all()
    )


def _lock_admin_request(request_id: int) -> AdminRequest:
    req = (
        AdminRequest.query
        .filter(AdminRequest.id == request_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if req is None:
        raise NotFoundError("AdminRequest", request_id)
    return req


def get_trip(request_id: int) -> TripRequest:
    trip = db.session.get(TripRequest, request_id)
    if trip is None:
        raise NotFoundError("TripRequest", request_id)
    return trip


def get_admin_request(request_id: int) -> AdminRequest:
    req = db.session.get(AdminRequest, request_id)
    if req is None:
        raise NotFoundError("AdminRequest", request_id)
    return req


def _history(request, status: str, actor: Optional[User], role: Optional[str], reason: Optional[str] = None):
    entry = StatusHistoryEntry(
        status=status,
        actor_id=getattr(actor, "id", None),
        role=role,
        reason=reason,
        created_at=utcnow(),
    )
    if isinstance(request, TripRequest):
        entry.trip_request_id = request.id
    else:
        entry.admin_request_id = request.id
    db.session.add(entry)
    return entry


def _touch(request, actor: User) -> None:
    request.last_updated_at = utcnow()
    request.last_updated_by = actor.id


def _is_reservation_step(trip: TripRequest, step: WorkflowStep) -> bool:
    if trip.project_id:
        return step.step_type == StepType.PROJECT_MANAGER
    return step.step_type == StepType.FINANCE_APPROVAL


# ---------------------------------------------------------------------
# Trip creation
# ---------------------------------------------------------------------
def _required_text(payload: dict, key: str) -> str:
    value = payload.get(key)
    if isinstance(value, str):
        value = value.strip()
    if not value:
        raise ValidationError(f"'{key}' is required", field=key)
    return value


def _resolve_org(payload: dict, requester: User) -> tuple[Optional[Project], Optional[Department]]:
    """Project trips inherit the project's department; otherwise the requester's department."""
    project_id = parse_optional_int(payload.get("project_id"), field="project_id")
    department_id = parse_optional_int(payload.get("department_id"), field="department_id")

    project = None
    if project_id is not None:
        project = db.session.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        if not project.is_active:
            raise ValidationError(f"Project '{project.name}' is not active", field="project_id")
        if project.expiry_date is not None and project.expiry_date < utcnow().date():
            raise ValidationError(f"Project '{project.name}' expired on {project.expiry_date}", field="project_id")
        department_id = project.department_id or department_id

    if department_id is None:
        department_id = requester.department_id

    department = None
    if department_id is not None:
        department = db.session.get(Department, department_id)
        if department is None:
            raise NotFoundError("Department", department_id)
        if not department.is_active:
            raise ValidationError(f"Department '{department.name}' is not active", field="department_id")

    if project is None and department is None:
        raise ValidationError("A trip must be routed to a department or a project", field="department_id")
    return project, department


def create_trip_request(payload: dict, requester: User, acting_role: Optional[str] = None) -> TripRequest:
    """Validate, price, route and persist a new trip request with its approval chain."""
    role = resolve_acting_role(requester, acting_role)
    if role != Role.EMPLOYEE:
        raise NotAuthorizedError("Trip requests are submitted as Employee", required_role=Role.EMPLOYEE)

    trip_date = parse_date(payload.get("trip_date"), field="trip_date")
    if trip_date is None:
        raise ValidationError("'trip_date' is required", field="trip_date")
    origin = _required_text(payload, "origin")
    destination = _required_text(payload, "destination")

    trip_type = payload.get("trip_type") or TripType.PLANNED
    if trip_type not in TripType.ALL:
        raise ValidationError(f"Unknown trip type '{trip_type}'", field="trip_type")

    method = payload.get("cost_method") or (CostMethod.DIRECT if payload.get("cost") is not None else CostMethod.KM)

    with unit_of_work():
        project, department = _resolve_org(payload, requester)
        resolution = rates.resolve_cost(method, payload.get("kilometers"), payload.get("cost"), trip_date)

        trip = TripRequest(
            user_id=requester.id,
            project_id=project.id if project else None,
            department_id=department.id if department else None,
            trip_date=trip_date,
            origin=origin,
            destination=destination,
            purpose=(payload.get("purpose") or "").strip() or None,
            trip_type=trip_type,
            ticket_no=(payload.get("ticket_no") or "").strip() or None,
            kilometers=parse_decimal(payload.get("kilometers"), field="kilometers"),
            created_at=utcnow(),
        )
        rates.apply_cost(trip, resolution)

        steps = workflow.generate(trip, requester, project=project, department=department)
        trip.status = workflow.project_status(steps)

        db.session.add(trip)
        db.session.flush()

        _history(trip, trip.status, requester, role)
        if workflow.bypasses_department_approval(trip, project):
            _history(trip, trip.status, requester, role, URGENT_BYPASS_NOTE)

        audit.record(
            requester,
            "TRIP_CREATED",
            {"status": trip.status, "cost": trip.cost, "steps": [s.step_type for s in steps]},
            entity=trip,
            after=audit.serialize_model(trip),
        )

    logger.info("Trip request %s created by %s (%s, cost %s)", trip.id, requester.username, trip.status, trip.cost)
    return trip


# ---------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------
def decide(request_id: int, actor: User, approve: bool, reason: Optional[str] = None,
           acting_role: Optional[str] = None) -> TripRequest:
    """Approve or reject the head-of-line step of a trip request."""
    reason = (reason or "").strip() or None

    with unit_of_work():
        trip = _lock_trip(request_id)
        steps = _lock_steps(trip)
        head = workflow.head_step(steps)
        if head is None:
            raise NoPendingStepError(request_id)

        qualified_as = authorize_step(actor, head, acting_role)
        role = resolve_acting_role(actor, acting_role)
        old_status = trip.status
        now = utcnow()
        restored = None
        reserved = None

        if not approve:
            head.status = StepStatus.REJECTED
            head.rejection_reason = reason
            for step in steps:
                if step.status == StepStatus.PENDING and step is not head:
                    step.status = StepStatus.SKIPPED
            trip.rejection_reason = reason

            held = ledger.reservation_for(trip.id)
            if held > 0:
                owner_kind, owner_id = trip.owner
                ledger.restore(owner_kind, owner_id, held, trip.id, actor,
                               description=f"Trip request #{trip.id} rejected")
                restored = held
        else:
            if _is_reservation_step(trip, head) and ledger.reservation_for(trip.id) == 0:
                owner_kind, owner_id = trip.owner
                if owner_kind is not None:
                    ledger.reserve(owner_kind, owner_id, trip.cost, trip.id, actor,
                                   allow_negative=trip.is_urgent)
                    reserved = money(trip.cost)
            head.status = StepStatus.APPROVED
            if all(s.status == StepStatus.APPROVED for s in steps if s.is_required):
                for step in steps:
                    if step.status == StepStatus.PENDING:
                        step.status = StepStatus.SKIPPED

        head.decided_at = now
        head.decided_by = actor.id

        trip.status = workflow.project_status(steps)
        _touch(trip, actor)
        db.session.flush()

        _history(trip, trip.status, actor, role, reason)
        audit.record(
            actor,
            "TRIP_APPROVED" if approve else "TRIP_REJECTED",
            {
                "step_order": head.step_order,
                "step_type": head.step_type,
                "old_status": old_status,
                "new_status": trip.status,
                "reason": reason,
                "qualified_as": qualified_as,
                "reserved": reserved,
                "restored": restored,
            },
            entity=trip,
        )

    logger.info(
        "Trip %s step %s (%s) %s by %s -> %s",
        trip.id, head.step_order, head.step_type, "approved" if approve else "rejected",
        actor.username, trip.status,
    )
    return trip


def bulk_decide(request_ids: Iterable[int], actor: User, approve: bool, reason: Optional[str] = None,
                acting_role: Optional[str] = None) -> list[dict]:
    """
    Decide many trips; each one is its own unit of work.

    A failure on one request never rolls back the others. Returns one
    outcome per distinct request id, in input order.
    """
    outcomes = []
    seen = set()
    for request_id in request_ids:
        if request_id in seen:
            continue
        seen.add(request_id)
        try:
            trip = decide(request_id, actor, approve, reason, acting_role)
            outcomes.append({"request_id": request_id, "ok": True, "status": trip.status})
        except ExpenseFlowError as exc:
            logger.info("Bulk decision on trip %s failed: %s", request_id, exc.code)
            outcomes.append({
                "request_id": request_id,
                "ok": False,
                "error": exc.code,
                "message": exc.message,
                "details": exc.to_dict(),
            })
    return outcomes


def cancel(request_id: int, actor: User, reason: Optional[str] = None,
           acting_role: Optional[str] = None) -> TripRequest:
    """Requester (or Admin) withdraws a trip that is still in flight."""
    reason = (reason or "").strip() or None

    with unit_of_work():
        trip = _lock_trip(request_id)
        role = resolve_acting_role(actor, acting_role)
        if trip.user_id != actor.id and role != Role.ADMIN:
            raise NotAuthorizedError("Only the requester can cancel a trip request")
        if trip.is_terminal:
            raise InvalidStatusTransitionError(
                f"Trip request {trip.id} is {trip.status} and cannot be cancelled",
                current_status=trip.status,
            )

        old_status = trip.status
        for step in _lock_steps(trip):
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED

        held = ledger.reservation_for(trip.id)
        if held > 0:
            owner_kind, owner_id = trip.owner
            ledger.restore(owner_kind, owner_id, held, trip.id, actor,
                           description=f"Trip request #{trip.id} cancelled")

        trip.status = RequestStatus.CANCELLED
        _touch(trip, actor)
        db.session.flush()

        _history(trip, trip.status, actor, role, reason)
        audit.record(
            actor,
            "TRIP_CANCELLED",
            {"old_status": old_status, "reason": reason, "restored": held if held > 0 else None},
            entity=trip,
        )
    return trip


def mark_paid(request_id: int, actor: User, acting_role: Optional[str] = None) -> TripRequest:
    """Approved -> Paid. Irreversible."""
    with unit_of_work():
        role = require_role(actor, acting_role, Role.FINANCE)
        trip = _lock_trip(request_id)
        if trip.status != RequestStatus.APPROVED:
            raise InvalidStatusTransitionError(
                f"Only approved trips can be paid (trip {trip.id} is {trip.status})",
                current_status=trip.status,
            )
        now = utcnow()
        trip.paid = True
        trip.paid_at = now
        trip.paid_by = actor.id
        trip.status = RequestStatus.PAID
        _touch(trip, actor)
        db.session.flush()

        _history(trip, trip.status, actor, role)
        audit.record(actor, "TRIP_PAID", {"cost": trip.cost}, entity=trip)

    logger.info("Trip %s marked paid by %s", trip.id, actor.username)
    return trip


def update_trip_cost(request_id: int, actor: User, method: str, distance=None, amount=None,
                     acting_role: Optional[str] = None) -> TripRequest:
    """Re-price a trip. Refused once budget is reserved against it (cancel and recreate)."""
    with unit_of_work():
        role = resolve_acting_role(actor, acting_role)
        trip = _lock_trip(request_id)
        if trip.user_id != actor.id and role not in (Role.FINANCE, Role.ADMIN):
            raise NotAuthorizedError("Only the requester or Finance can change a trip's cost")
        if trip.is_terminal:
            raise ValidationError(f"Trip request {trip.id} is {trip.status}; its cost is final", field="cost")
        if ledger.reservation_for(trip.id) > 0:
            raise ValidationError(
                f"Budget is already reserved for trip request {trip.id}; cancel and recreate it to change the cost",
                field="cost",
            )

        before = audit.serialize_model(trip)
        resolution = rates.resolve_cost(method, distance, amount, trip.trip_date)
        rates.apply_cost(trip, resolution)
        trip.cost_updated_at = utcnow()
        trip.cost_updated_by = actor.id
        _touch(trip, actor)
        db.session.flush()

        audit.record(
            actor,
            "TRIP_COST_UPDATED",
            {"old_cost": before["cost"], "new_cost": trip.cost, "method": method},
            entity=trip,
            before=before,
            after=audit.serialize_model(trip),
        )
    return trip


# ---------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------
def get_workflow_steps(request_id: int) -> list[WorkflowStep]:
    trip = get_trip(request_id)
    return list(trip.steps)


def get_status_history(request_id: int) -> list[StatusHistoryEntry]:
    trip = get_trip(request_id)
    return list(trip.history)


def trips_for_requester(user: User) -> list[TripRequest]:
    return (
        TripRequest.query
        .filter(TripRequest.user_id == user.id)
        .order_by(TripRequest.created_at.desc(), TripRequest.id.desc())
        .all()
    )


def pending_for(actor: User, acting_role: Optional[str] = None) -> list[TripRequest]:
    """Trips whose head step this actor may decide right now."""
    role = resolve_acting_role(actor, acting_role)
    candidates = (
        TripRequest.query
        .filter(TripRequest.status.in_((
            RequestStatus.PENDING_DEPARTMENT,
            RequestStatus.PENDING_PROJECT,
            RequestStatus.PENDING_FINANCE,
        )))
        .order_by(TripRequest.created_at, TripRequest.id)
        .all()
    )
    result = []
    for trip in candidates:
        head = workflow.head_step(trip.steps)
        if head is None:
            continue
        try:
            authorize_step(actor, head, role)
        except NotAuthorizedError:
            continue
        result.append(trip)
    return result


# ---------------------------------------------------------------------
# Administrative requests
# ---------------------------------------------------------------------
def create_admin_request(payload: dict, requester: User, acting_role: Optional[str] = None) -> AdminRequest:
    """Administrative requests go straight to a single Finance decision."""
    role = resolve_acting_role(requester, acting_role)
    subject = _required_text(payload, "subject")
    description = _required_text(payload, "description")

    request_type = payload.get("request_type") or AdminRequestType.OTHER
    if request_type not in AdminRequestType.ALL:
        raise ValidationError(f"Unknown request type '{request_type}'", field="request_type")

    trip_request_id = parse_optional_int(payload.get("trip_request_id"), field="trip_request_id")
    requested_amount = parse_decimal(payload.get("requested_amount"), field="requested_amount")
    target_type = payload.get("target_type") or None
    target_id = parse_optional_int(payload.get("target_id"), field="target_id")

    if request_type == AdminRequestType.BUDGET_INCREASE:
        if requested_amount is None or requested_amount <= 0:
            raise ValidationError("A budget increase needs a positive amount", field="requested_amount")
        if target_type not in OwnerKind.ALL or target_id is None:
            raise ValidationError("A budget increase needs a department or project target", field="target_type")
    if request_type == AdminRequestType.COST_ADJUSTMENT and trip_request_id is None:
        raise ValidationError("A cost adjustment must reference a trip request", field="trip_request_id")

    with unit_of_work():
        if trip_request_id is not None:
            get_trip(trip_request_id)
        if target_type is not None:
            ledger.load_owner(target_type, target_id)

        req = AdminRequest(
            user_id=requester.id,
            subject=subject,
            description=description,
            request_type=request_type,
            trip_request_id=trip_request_id,
            requested_amount=money(requested_amount) if requested_amount is not None else None,
            target_type=target_type,
            target_id=target_id,
            status=RequestStatus.PENDING_FINANCE,
            created_at=utcnow(),
        )
        db.session.add(req)
        db.session.flush()

        _history(req, req.status, requester, role)
        audit.record(requester, "ADMIN_REQUEST_CREATED", entity=req, after=audit.serialize_model(req))
    return req


def decide_admin_request(request_id: int, actor: User, approve: bool, reason: Optional[str] = None,
                         acting_role: Optional[str] = None) -> AdminRequest:
    """Single Finance decision; an approved budget increase adjusts the target's budget."""
    reason = (reason or "").strip() or None

    with unit_of_work():
        role = require_role(actor, acting_role, Role.FINANCE)
        req = _lock_admin_request(request_id)
        if req.status != RequestStatus.PENDING_FINANCE:
            raise NoPendingStepError(request_id)
        if req.user_id == actor.id and role != Role.ADMIN:
            raise SelfApprovalError(actor.id, StepType.FINANCE_APPROVAL)

        old_status = req.status
        adjusted_to = None
        if approve:
            req.status = RequestStatus.APPROVED
            if req.request_type == AdminRequestType.BUDGET_INCREASE:
                adjusted_to = ledger.adjust(
                    req.target_type,
                    req.target_id,
                    req.requested_amount,
                    actor,
                    reference=req.id,
                    description=f"Administrative request #{req.id}: {req.subject}",
                )
        else:
            req.status = RequestStatus.REJECTED
            req.rejection_reason = reason

        _touch(req, actor)
        db.session.flush()

        _history(req, req.status, actor, role, reason)
        audit.record(
            actor,
            "ADMIN_REQUEST_APPROVED" if approve else "ADMIN_REQUEST_REJECTED",
            {"old_status": old_status, "new_status": req.status, "reason": reason, "balance_after": adjusted_to},
            entity=req,
        )
    return req


def mark_admin_paid(request_id: int, actor: User, acting_role: Optional[str] = None) -> AdminRequest:
    with unit_of_work():
        role = require_role(actor, acting_role, Role.FINANCE)
        req = _lock_admin_request(request_id)
        if req.status != RequestStatus.APPROVED:
            raise InvalidStatusTransitionError(
                f"Only approved requests can be paid (request {req.id} is {req.status})",
                current_status=req.status,
            )
        req.paid = True
        req.paid_at = utcnow()
        req.paid_by = actor.id
        req.status = RequestStatus.PAID
        _touch(req, actor)
        db.session.flush()

        _history(req, req.status, actor, role)
        audit.record(actor, "ADMIN_REQUEST_PAID", {"amount": req.requested_amount}, entity=req)
    return req
