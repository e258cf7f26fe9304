"""Tests for the approval state machine (trip requests)."""

from datetime import timedelta
from decimal import Decimal

import pytest

from expenseflow import approvals, ledger
from expenseflow.audit import get_audit_trail
from expenseflow.errors import (
    BudgetExceededError,
    InvalidStatusTransitionError,
    NoPendingStepError,
    NotAuthorizedError,
    SelfApprovalError,
    ValidationError,
)
from expenseflow.models import (
    LedgerTransaction,
    ManagerDelegation,
    OwnerKind,
    RequestStatus,
    Role,
    StepStatus,
    StepType,
    TripRequest,
    utcnow,
)


def _ledger_types(owner_kind, owner_id):
    return [e.transaction_type for e in reversed(ledger.history(owner_kind, owner_id))]


def _pending_orders(trip):
    return [s.step_order for s in approvals.get_workflow_steps(trip.id) if s.status == StepStatus.PENDING]


class TestCreateTripRequest:

    def test_department_trip(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(), org["employee"])

        assert trip.status == RequestStatus.PENDING_DEPARTMENT
        assert trip.department_id == org["department"].id
        assert trip.cost == Decimal("50.00")
        history = approvals.get_status_history(trip.id)
        assert [h.status for h in history] == [RequestStatus.PENDING_DEPARTMENT]
        assert history[0].role == Role.EMPLOYEE

    def test_project_trip_inherits_department(self, project_org, trip_payload):
        trip = approvals.create_trip_request(
            trip_payload(project_id=project_org["project"].id), project_org["employee"]
        )
        assert trip.status == RequestStatus.PENDING_PROJECT
        assert trip.department_id == project_org["department"].id

    def test_urgent_department_trip_records_bypass(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(trip_type="Urgent"), org["employee"])
        assert trip.status == RequestStatus.PENDING_FINANCE
        history = approvals.get_status_history(trip.id)
        assert [h.status for h in history] == [RequestStatus.PENDING_FINANCE, RequestStatus.PENDING_FINANCE]
        assert history[1].reason == approvals.URGENT_BYPASS_NOTE
        assert all(h.status in RequestStatus.ALL for h in history)

    def test_missing_fields(self, org, trip_payload):
        with pytest.raises(ValidationError) as exc:
            approvals.create_trip_request(trip_payload(origin=""), org["employee"])
        assert exc.value.field == "origin"
        assert TripRequest.query.count() == 0

    def test_manager_must_switch_to_employee(self, org, trip_payload):
        manager = org["manager"]
        with pytest.raises(NotAuthorizedError):
            approvals.create_trip_request(trip_payload(department_id=org["department"].id), manager)
        trip = approvals.create_trip_request(
            trip_payload(department_id=org["department"].id), manager, acting_role=Role.EMPLOYEE
        )
        assert trip.user_id == manager.id

    def test_project_manager_cannot_file_on_own_project(self, project_org, trip_payload):
        with pytest.raises(SelfApprovalError):
            approvals.create_trip_request(
                trip_payload(project_id=project_org["project"].id), project_org["pm"], acting_role=Role.EMPLOYEE
            )
        assert TripRequest.query.count() == 0

    def test_inactive_project_refused(self, db, project_org, trip_payload):
        project_org["project"].is_active = False
        db.session.commit()
        with pytest.raises(ValidationError):
            approvals.create_trip_request(trip_payload(project_id=project_org["project"].id), project_org["employee"])


class TestScenarios:

    def test_department_trip_reserves_on_finance_approval(self, org, trip_payload):
        department = org["department"]
        trip = approvals.create_trip_request(trip_payload(cost="50"), org["employee"])

        trip = approvals.decide(trip.id, org["manager"], True)
        assert trip.status == RequestStatus.PENDING_FINANCE
        assert ledger.available_balance(department) == Decimal("200.00")

        trip = approvals.decide(trip.id, org["finance"], True)
        assert trip.status == RequestStatus.APPROVED
        assert ledger.available_balance(department) == Decimal("150.00")
        assert department.available_budget == Decimal("150.00")
        assert _ledger_types(OwnerKind.DEPARTMENT, department.id) == [LedgerTransaction.ALLOCATION]

    def test_project_budget_exceeded_leaves_no_trace(self, project_org, trip_payload):
        project = project_org["project"]
        trip = approvals.create_trip_request(
            trip_payload(project_id=project.id, cost="300"), project_org["employee"]
        )
        audit_rows = len(get_audit_trail())

        with pytest.raises(BudgetExceededError) as exc:
            approvals.decide(trip.id, project_org["pm"], True)

        assert exc.value.excess == Decimal("100.00")
        trip = approvals.get_trip(trip.id)
        assert trip.status == RequestStatus.PENDING_PROJECT
        assert approvals.get_workflow_steps(trip.id)[0].status == StepStatus.PENDING
        assert _ledger_types(OwnerKind.PROJECT, project.id) == [LedgerTransaction.INITIAL]
        assert len(approvals.get_status_history(trip.id)) == 1
        assert len(get_audit_trail()) == audit_rows

    def test_urgent_project_trip_overrides_budget(self, project_org, trip_payload):
        project = project_org["project"]
        trip = approvals.create_trip_request(
            trip_payload(project_id=project.id, cost="300", trip_type="Urgent"), project_org["employee"]
        )
        assert not ledger.check_for_trip(OwnerKind.PROJECT, project.id, Decimal("300")).can_approve

        trip = approvals.decide(trip.id, project_org["pm"], True)

        assert trip.status == RequestStatus.PENDING_FINANCE
        assert ledger.available_balance(project) == Decimal("-100.00")
        latest = ledger.history(OwnerKind.PROJECT, project.id)[0]
        assert latest.transaction_type == LedgerTransaction.ALLOCATION
        assert latest.amount == Decimal("-300.00")

    def test_urgent_override_applies_when_already_negative(self, project_org, trip_payload):
        project = project_org["project"]
        employee = project_org["employee"]
        first = approvals.create_trip_request(
            trip_payload(project_id=project.id, cost="300", trip_type="Urgent"), employee
        )
        second = approvals.create_trip_request(
            trip_payload(project_id=project.id, cost="20", trip_type="Urgent"), employee
        )
        approvals.decide(first.id, project_org["pm"], True)
        approvals.decide(second.id, project_org["pm"], True)

        assert ledger.available_balance(project) == Decimal("-120.00")

    def test_finance_rejection_restores_reservation(self, project_org, trip_payload):
        project = project_org["project"]
        trip = approvals.create_trip_request(
            trip_payload(project_id=project.id, cost="120"), project_org["employee"]
        )
        approvals.decide(trip.id, project_org["pm"], True)
        assert ledger.available_balance(project) == Decimal("80.00")

        trip = approvals.decide(trip.id, project_org["finance"], False, reason="Duplicate claim")

        assert trip.status == RequestStatus.REJECTED
        assert trip.rejection_reason == "Duplicate claim"
        rows = list(reversed(ledger.history(OwnerKind.PROJECT, project.id)))
        assert [r.transaction_type for r in rows] == [
            LedgerTransaction.INITIAL, LedgerTransaction.ALLOCATION, LedgerTransaction.DEALLOCATION,
        ]
        assert rows[1].amount == -rows[2].amount == Decimal("-120.00")
        assert ledger.available_balance(project) == Decimal("200.00")
        assert ledger.reservation_for(trip.id) == Decimal("0.00")


class TestHeadOfLine:

    def test_only_head_step_is_actionable(self, make_user, make_department, trip_payload, org):
        first = make_user(Role.MANAGER)
        second = make_user(Role.MANAGER)
        department = make_department(name="Field", manager=first, second=second)
        employee = make_user(Role.EMPLOYEE, department=department)
        trip = approvals.create_trip_request(trip_payload(), employee)

        with pytest.raises(NotAuthorizedError):
            approvals.decide(trip.id, second, True)
        assert _pending_orders(trip) == [1, 2, 3]

        approvals.decide(trip.id, first, True)
        assert min(_pending_orders(trip)) == 2
        approvals.decide(trip.id, second, True)
        approvals.decide(trip.id, org["finance"], True)

        assert _pending_orders(trip) == []
        with pytest.raises(NoPendingStepError):
            approvals.decide(trip.id, org["finance"], True)

    def test_rejection_skips_remaining_steps(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        approvals.decide(trip.id, org["manager"], False, reason="Not needed")

        statuses = [s.status for s in approvals.get_workflow_steps(trip.id)]
        assert statuses == [StepStatus.REJECTED, StepStatus.SKIPPED]
        with pytest.raises(NoPendingStepError):
            approvals.decide(trip.id, org["finance"], True)

    def test_finance_step_needs_finance_role(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(trip_type="Urgent"), org["employee"])
        with pytest.raises(NotAuthorizedError) as exc:
            approvals.decide(trip.id, org["manager"], True)
        assert exc.value.required_role == Role.FINANCE

    def test_admin_override(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        trip = approvals.decide(trip.id, org["admin"], True)
        assert trip.status == RequestStatus.PENDING_FINANCE


class TestDelegation:

    def test_active_delegate_may_decide(self, db, org, make_user, trip_payload):
        deputy = make_user(Role.MANAGER, username="deputy")
        db.session.add(ManagerDelegation(
            delegator_id=org["manager"].id,
            delegate_id=deputy.id,
            capabilities="approve_trips",
            starts_at=utcnow() - timedelta(hours=1),
            ends_at=utcnow() + timedelta(days=1),
        ))
        db.session.commit()

        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        trip = approvals.decide(trip.id, deputy, True)

        assert trip.status == RequestStatus.PENDING_FINANCE
        assert approvals.get_workflow_steps(trip.id)[0].decided_by == deputy.id

    def test_expired_delegation_is_ignored(self, db, org, make_user, trip_payload):
        deputy = make_user(Role.MANAGER, username="deputy")
        db.session.add(ManagerDelegation(
            delegator_id=org["manager"].id,
            delegate_id=deputy.id,
            capabilities="approve_trips",
            starts_at=utcnow() - timedelta(days=3),
            ends_at=utcnow() - timedelta(days=1),
        ))
        db.session.commit()

        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        with pytest.raises(NotAuthorizedError):
            approvals.decide(trip.id, deputy, True)


class TestBulkDecide:

    def test_failures_are_isolated(self, project_org, trip_payload):
        project = project_org["project"]
        employee = project_org["employee"]
        fits = approvals.create_trip_request(trip_payload(project_id=project.id, cost="150"), employee)
        too_big = approvals.create_trip_request(trip_payload(project_id=project.id, cost="100"), employee)

        outcomes = approvals.bulk_decide([fits.id, too_big.id, 9999], project_org["pm"], True)

        assert [o["ok"] for o in outcomes] == [True, False, False]
        assert outcomes[1]["error"] == "BUDGET_EXCEEDED"
        assert outcomes[1]["details"]["excess"] == "50.00"
        assert outcomes[2]["error"] == "NOT_FOUND"
        assert approvals.get_trip(fits.id).status == RequestStatus.PENDING_FINANCE
        assert approvals.get_trip(too_big.id).status == RequestStatus.PENDING_PROJECT


class TestCancelAndPay:

    def test_cancel_restores_reservation(self, project_org, trip_payload):
        project = project_org["project"]
        trip = approvals.create_trip_request(trip_payload(project_id=project.id, cost="60"), project_org["employee"])
        approvals.decide(trip.id, project_org["pm"], True)

        trip = approvals.cancel(trip.id, project_org["employee"], reason="Plans changed")

        assert trip.status == RequestStatus.CANCELLED
        assert ledger.available_balance(project) == Decimal("200.00")
        assert _pending_orders(trip) == []

    def test_only_requester_cancels(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        with pytest.raises(NotAuthorizedError):
            approvals.cancel(trip.id, org["manager"])

    def test_mark_paid_requires_approved(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        with pytest.raises(InvalidStatusTransitionError):
            approvals.mark_paid(trip.id, org["finance"])

        approvals.decide(trip.id, org["manager"], True)
        approvals.decide(trip.id, org["finance"], True)
        trip = approvals.mark_paid(trip.id, org["finance"])

        assert trip.status == RequestStatus.PAID
        assert trip.paid is True
        assert trip.paid_by == org["finance"].id
        with pytest.raises(InvalidStatusTransitionError):
            approvals.mark_paid(trip.id, org["finance"])

    def test_employee_cannot_mark_paid(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        approvals.decide(trip.id, org["manager"], True)
        approvals.decide(trip.id, org["finance"], True)
        with pytest.raises(NotAuthorizedError):
            approvals.mark_paid(trip.id, org["employee"])


class TestUpdateTripCost:

    def test_cost_editable_before_reservation(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(cost="50"), org["employee"])
        trip = approvals.update_trip_cost(trip.id, org["employee"], "direct", amount="75")
        assert trip.cost == Decimal("75.00")

    def test_cost_frozen_after_reservation(self, project_org, trip_payload):
        trip = approvals.create_trip_request(
            trip_payload(project_id=project_org["project"].id, cost="50"), project_org["employee"]
        )
        approvals.decide(trip.id, project_org["pm"], True)
        with pytest.raises(ValidationError):
            approvals.update_trip_cost(trip.id, project_org["employee"], "direct", amount="10")
        assert approvals.get_trip(trip.id).cost == Decimal("50.00")


class TestAuditTrail:

    def test_every_decision_is_audited(self, org, trip_payload):
        trip = approvals.create_trip_request(trip_payload(), org["employee"])
        approvals.decide(trip.id, org["manager"], True)

        actions = [row.action for row in get_audit_trail(actor_id=org["manager"].id)]
        assert actions == ["TRIP_APPROVED"]
        assert get_audit_trail()[0].details["step_type"] == StepType.DEPARTMENT_MANAGER
