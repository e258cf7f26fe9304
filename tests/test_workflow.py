"""Tests for approval chain generation and status projection."""

from datetime import date
from decimal import Decimal

import pytest

from expenseflow import workflow
from expenseflow.errors import NoApproverConfiguredError, SelfApprovalError
from expenseflow.models import (
    RequestStatus,
    Role,
    StepStatus,
    StepType,
    TripRequest,
    TripType,
    WorkflowStep,
)


def _trip(trip_type=TripType.PLANNED, kilometers=None):
    return TripRequest(
        trip_date=date(2025, 3, 1),
        origin="A",
        destination="B",
        cost=Decimal("10.00"),
        trip_type=trip_type,
        kilometers=kilometers,
    )


def _types(steps):
    return [s.step_type for s in steps]


class TestDepartmentChain:

    def test_single_manager(self, org):
        steps = workflow.generate(_trip(), org["employee"], department=org["department"])
        assert _types(steps) == [StepType.DEPARTMENT_MANAGER, StepType.FINANCE_APPROVAL]
        assert [s.step_order for s in steps] == [1, 2]
        assert steps[0].approver_id == org["manager"].id
        assert steps[1].approver_id is None

    def test_second_and_third_managers(self, make_user, make_department):
        first = make_user(Role.MANAGER)
        second = make_user(Role.MANAGER)
        third = make_user(Role.MANAGER)
        department = make_department(manager=first, second=second, third=third, third_required=True)
        requester = make_user(Role.EMPLOYEE, department=department)

        steps = workflow.generate(_trip(), requester, department=department)

        assert _types(steps) == [
            StepType.DEPARTMENT_MANAGER,
            StepType.SECOND_DEPARTMENT_MANAGER,
            StepType.TERTIARY_DEPARTMENT_MANAGER,
            StepType.FINANCE_APPROVAL,
        ]
        assert [s.step_order for s in steps] == [1, 2, 3, 4]

    def test_third_manager_omitted_when_not_required(self, make_user, make_department):
        first = make_user(Role.MANAGER)
        third = make_user(Role.MANAGER)
        department = make_department(manager=first, third=third, third_required=False)
        requester = make_user(Role.EMPLOYEE, department=department)

        steps = workflow.generate(_trip(), requester, department=department)

        # dense ordering over materialised steps only
        assert _types(steps) == [StepType.DEPARTMENT_MANAGER, StepType.FINANCE_APPROVAL]
        assert [s.step_order for s in steps] == [1, 2]

    def test_long_ticket_trip_requires_third_manager(self, make_user, make_department):
        first = make_user(Role.MANAGER)
        third = make_user(Role.MANAGER)
        department = make_department(manager=first, third=third)
        requester = make_user(Role.EMPLOYEE, department=department)

        long_trip = workflow.generate(_trip(TripType.TICKET, Decimal("51")), requester, department=department)
        short_trip = workflow.generate(_trip(TripType.TICKET, Decimal("50")), requester, department=department)

        assert StepType.TERTIARY_DEPARTMENT_MANAGER in _types(long_trip)
        assert StepType.TERTIARY_DEPARTMENT_MANAGER not in _types(short_trip)

    def test_missing_manager(self, make_user, make_department):
        department = make_department(manager=None)
        requester = make_user(Role.EMPLOYEE, department=department)
        with pytest.raises(NoApproverConfiguredError) as exc:
            workflow.generate(_trip(), requester, department=department)
        assert exc.value.step_type == StepType.DEPARTMENT_MANAGER

    def test_urgent_trip_goes_straight_to_finance(self, org):
        steps = workflow.generate(_trip(TripType.URGENT), org["employee"], department=org["department"])
        assert _types(steps) == [StepType.FINANCE_APPROVAL]
        assert steps[0].step_order == 1


class TestProjectChain:

    def test_project_manager_then_finance(self, project_org):
        steps = workflow.generate(_trip(), project_org["employee"], project=project_org["project"],
                                  department=project_org["department"])
        assert _types(steps) == [StepType.PROJECT_MANAGER, StepType.FINANCE_APPROVAL]

    def test_second_project_manager(self, org, make_user, make_project):
        pm = make_user(Role.MANAGER)
        second = make_user(Role.MANAGER)
        project = make_project(manager=pm, second=second)
        steps = workflow.generate(_trip(), org["employee"], project=project)
        assert _types(steps) == [
            StepType.PROJECT_MANAGER,
            StepType.SECOND_PROJECT_MANAGER,
            StepType.FINANCE_APPROVAL,
        ]

    def test_urgent_project_trip_keeps_project_chain(self, project_org):
        steps = workflow.generate(_trip(TripType.URGENT), project_org["employee"], project=project_org["project"])
        assert _types(steps)[0] == StepType.PROJECT_MANAGER

    def test_requester_cannot_be_project_manager(self, project_org):
        with pytest.raises(SelfApprovalError):
            workflow.generate(_trip(), project_org["pm"], project=project_org["project"])

    def test_project_without_manager(self, org, make_project):
        project = make_project(manager=None)
        with pytest.raises(NoApproverConfiguredError):
            workflow.generate(_trip(), org["employee"], project=project)


class TestStatusProjection:

    def _steps(self, *pairs):
        return [
            WorkflowStep(step_order=i, step_type=t, status=s, is_required=True)
            for i, (t, s) in enumerate(pairs, start=1)
        ]

    def test_head_pending_step_decides_status(self):
        steps = self._steps(
            (StepType.PROJECT_MANAGER, StepStatus.APPROVED),
            (StepType.FINANCE_APPROVAL, StepStatus.PENDING),
        )
        assert workflow.project_status(steps) == RequestStatus.PENDING_FINANCE
        assert workflow.head_step(steps).step_order == 2

    def test_all_approved(self):
        steps = self._steps(
            (StepType.DEPARTMENT_MANAGER, StepStatus.APPROVED),
            (StepType.FINANCE_APPROVAL, StepStatus.APPROVED),
        )
        assert workflow.project_status(steps) == RequestStatus.APPROVED

    def test_any_rejection(self):
        steps = self._steps(
            (StepType.DEPARTMENT_MANAGER, StepStatus.REJECTED),
            (StepType.FINANCE_APPROVAL, StepStatus.SKIPPED),
        )
        assert workflow.project_status(steps) == RequestStatus.REJECTED

    @pytest.mark.parametrize("step_type,status", [
        (StepType.DEPARTMENT_MANAGER, RequestStatus.PENDING_DEPARTMENT),
        (StepType.TERTIARY_DEPARTMENT_MANAGER, RequestStatus.PENDING_DEPARTMENT),
        (StepType.SECOND_PROJECT_MANAGER, RequestStatus.PENDING_PROJECT),
        (StepType.FINANCE_APPROVAL, RequestStatus.PENDING_FINANCE),
    ])
    def test_status_for_step(self, step_type, status):
        assert workflow.status_for_step(step_type) == status
