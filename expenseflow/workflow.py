"""
expenseflow/workflow.py

Approval chain construction and status projection.

Project-routed trip:
    Project Manager -> Second Project Manager (if configured) -> Finance Approval

Department-routed trip:
    Department Manager -> Second Department Manager (if configured)
        -> Tertiary Department Manager (if configured AND required) -> Finance Approval

Urgent department-routed trips skip the department managers and go straight
to Finance. Administrative requests never use this module.

IMPORTANT:
- Steps that have no approver configured are never materialised; order
  indices are dense 1..N over the steps actually created.
- Request status is a projection of the steps (project_status()). Nothing
  else decides it while the request is in flight.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from flask import current_app, has_app_context

from .errors import NoApproverConfiguredError, SelfApprovalError
from .models import (
    Department,
    Project,
    RequestStatus,
    StepStatus,
    StepType,
    TripRequest,
    TripType,
    User,
    WorkflowStep,
)

logger = logging.getLogger(__name__)


def _km_threshold() -> int:
    if has_app_context():
        return int(current_app.config.get("TERTIARY_APPROVAL_KM_THRESHOLD", 50))
    return 50


def tertiary_required(trip: TripRequest, department: Department) -> bool:
    """Third manager joins when the department demands it, or for long Ticket trips."""
    if department.third_manager_required:
        return True
    if trip.trip_type == TripType.TICKET and trip.kilometers is not None:
        return trip.kilometers > _km_threshold()
    return False


def bypasses_department_approval(trip: TripRequest, project: Optional[Project]) -> bool:
    return project is None and trip.trip_type == TripType.URGENT


def generate(
    trip: TripRequest,
    requester: User,
    project: Optional[Project] = None,
    department: Optional[Department] = None,
) -> list[WorkflowStep]:
    """
    Build the ordered approval steps of a new trip.

    The steps are attached to trip.steps (and so saved with it).
    Raises SelfApprovalError / NoApproverConfiguredError; nothing is
    attached in that case.
    """
    chain: list[tuple[str, Optional[int]]] = []

    if project is not None:
        if not project.manager_id:
            raise NoApproverConfiguredError(StepType.PROJECT_MANAGER, f"project '{project.name}'")
        if project.manager_id == requester.id:
            raise SelfApprovalError(requester.id, StepType.PROJECT_MANAGER)
        chain.append((StepType.PROJECT_MANAGER, project.manager_id))
        if project.second_manager_id:
            chain.append((StepType.SECOND_PROJECT_MANAGER, project.second_manager_id))

    elif bypasses_department_approval(trip, project):
        logger.info("Urgent trip by user %s: department approval bypassed", requester.id)

    else:
        if department is None or not department.manager_id:
            owner = f"department '{department.name}'" if department is not None else "no department"
            raise NoApproverConfiguredError(StepType.DEPARTMENT_MANAGER, owner)
        chain.append((StepType.DEPARTMENT_MANAGER, department.manager_id))
        if department.second_manager_id:
            chain.append((StepType.SECOND_DEPARTMENT_MANAGER, department.second_manager_id))
        if department.third_manager_id and tertiary_required(trip, department):
            chain.append((StepType.TERTIARY_DEPARTMENT_MANAGER, department.third_manager_id))

    # Finance is any Finance user; no designated approver
    chain.append((StepType.FINANCE_APPROVAL, None))

    steps = [
        WorkflowStep(step_order=index, step_type=step_type, approver_id=approver_id,
                     status=StepStatus.PENDING, is_required=True)
        for index, (step_type, approver_id) in enumerate(chain, start=1)
    ]
    trip.steps = steps
    return steps


# ---------------------------------------------------------------------
# Status projection
# ---------------------------------------------------------------------
def status_for_step(step_type: str) -> str:
    """Map a pending step to the request-level "Pending ... Approval" status."""
    if step_type == StepType.FINANCE_APPROVAL:
        return RequestStatus.PENDING_FINANCE
    if step_type in StepType.PROJECT:
        return RequestStatus.PENDING_PROJECT
    return RequestStatus.PENDING_DEPARTMENT


def head_step(steps: Iterable[WorkflowStep]) -> Optional[WorkflowStep]:
    """Lowest-order Pending step, or None."""
    pending = [s for s in steps if s.status == StepStatus.PENDING]
    if not pending:
        return None
    return min(pending, key=lambda s: s.step_order)


def project_status(steps: Iterable[WorkflowStep]) -> str:
    """
    Request status derived from its steps.

    Any rejection -> Rejected; all required approved -> Approved;
    otherwise the pending status of the head step.
    """
    steps = sorted(steps, key=lambda s: s.step_order)
    if any(s.status == StepStatus.REJECTED for s in steps):
        return RequestStatus.REJECTED
    if all(s.status == StepStatus.APPROVED for s in steps if s.is_required):
        return RequestStatus.APPROVED
    head = head_step(steps)
    if head is None:
        # only Skipped left on a non-rejected chain
        return RequestStatus.CANCELLED
    return status_for_step(head.step_type)
