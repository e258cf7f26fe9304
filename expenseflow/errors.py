"""
expenseflow/errors.py

Typed errors raised by the approval core.

Every error has:
- a machine-readable `code` (stable, safe to return to API clients)
- an HTTP `status_code` used by the JSON error handler in create_app()
- structured attributes (excess amount, step type, ...) exposed via to_dict()

IMPORTANT:
- Any of these aborts the whole unit of work for that operation.
  Nothing is partially applied (see utils.unit_of_work()).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class ExpenseFlowError(Exception):
    """Base class for all domain errors."""

    code: str = "EXPENSEFLOW_ERROR"
    status_code: int = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        for key, value in self.details.items():
            payload[key] = str(value) if isinstance(value, Decimal) else value
        return payload


class ValidationError(ExpenseFlowError):
    """Malformed or missing input. Caller fixes the payload and retries."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        if field is not None:
            details["field"] = field
        super().__init__(message, **details)
        self.field = field


class NotFoundError(ExpenseFlowError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class NotAuthorizedError(ExpenseFlowError):
    """Actor is not the head step's approver (or delegate) or lacks the role."""

    code = "NOT_AUTHORIZED"
    status_code = 403

    def __init__(self, message: str, required_role: Optional[str] = None, **details: Any):
        if required_role is not None:
            details["required_role"] = required_role
        super().__init__(message, **details)
        self.required_role = required_role


class WorkflowError(ExpenseFlowError):
    """Workflow construction/progression violations. Never auto-corrected."""

    code = "WORKFLOW_ERROR"
    status_code = 409


class NoPendingStepError(WorkflowError):
    code = "NO_PENDING_STEP"

    def __init__(self, request_id: int):
        super().__init__(f"Trip request {request_id} has no pending workflow step", request_id=request_id)
        self.request_id = request_id


class SelfApprovalError(WorkflowError):
    code = "SELF_APPROVAL"

    def __init__(self, user_id: int, step_type: str):
        super().__init__(
            f"User {user_id} cannot approve their own trip as {step_type}",
            user_id=user_id,
            step_type=step_type,
        )
        self.user_id = user_id
        self.step_type = step_type


class NoApproverConfiguredError(WorkflowError):
    code = "NO_APPROVER_CONFIGURED"

    def __init__(self, step_type: str, owner: str):
        super().__init__(f"No approver configured for mandatory step '{step_type}' ({owner})", step_type=step_type, owner=owner)
        self.step_type = step_type
        self.owner = owner


class InvalidStatusTransitionError(WorkflowError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message, current_status=current_status)
        self.current_status = current_status


class ImmutableRecordError(ExpenseFlowError):
    """Ledger, history and audit rows are append-only."""

    code = "IMMUTABLE_RECORD"
    status_code = 409

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} is append-only and cannot be changed", entity=entity, entity_id=entity_id)


class BudgetExceededError(ExpenseFlowError):
    """Reservation would take the owner's available budget below zero."""

    code = "BUDGET_EXCEEDED"
    status_code = 409

    def __init__(self, excess: Decimal, owner_kind: Optional[str] = None, owner_id: Optional[int] = None,
                 available: Optional[Decimal] = None):
        super().__init__(
            f"Trip cost exceeds available budget by {excess}",
            excess=excess,
            owner_kind=owner_kind,
            owner_id=owner_id,
            available=available,
        )
        self.excess = excess
        self.owner_kind = owner_kind
        self.owner_id = owner_id
        self.available = available


class ConcurrencyConflictError(ExpenseFlowError):
    """Another transaction changed the same rows. Retry the whole operation."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409

    def __init__(self, message: str = "The record was modified by another transaction; retry the operation"):
        super().__init__(message, retryable=True)


class RateNotFoundError(ExpenseFlowError):
    code = "RATE_NOT_FOUND"
    status_code = 422

    def __init__(self, effective_date: Any):
        super().__init__(f"No kilometer rate configured for {effective_date}", effective_date=str(effective_date))
        self.effective_date = effective_date
