"""Tests for acting roles, delegations and step authorisation."""

from datetime import timedelta

import pytest

from expenseflow.errors import NotAuthorizedError
from expenseflow.models import ManagerDelegation, Role, StepStatus, StepType, WorkflowStep, utcnow
from expenseflow.security import (
    APPROVE_TRIPS,
    active_delegation,
    authorize_step,
    require_role,
    resolve_acting_role,
)


def _step(step_type, approver=None):
    return WorkflowStep(
        step_order=1,
        step_type=step_type,
        status=StepStatus.PENDING,
        approver_id=approver.id if approver else None,
        is_required=True,
    )


def _delegate(db, delegator, delegate, capabilities=APPROVE_TRIPS, start=-1, end=24):
    now = utcnow()
    delegation = ManagerDelegation(
        delegator_id=delegator.id,
        delegate_id=delegate.id,
        capabilities=capabilities,
        starts_at=now + timedelta(hours=start),
        ends_at=now + timedelta(hours=end),
    )
    db.session.add(delegation)
    db.session.commit()
    return delegation


class TestActingRole:

    def test_defaults_to_base_role(self, org):
        assert resolve_acting_role(org["manager"]) == Role.MANAGER

    def test_manager_may_act_as_employee(self, org):
        assert resolve_acting_role(org["manager"], Role.EMPLOYEE) == Role.EMPLOYEE

    def test_employee_cannot_escalate(self, org):
        with pytest.raises(NotAuthorizedError):
            resolve_acting_role(org["employee"], Role.FINANCE)

    def test_require_role_lets_admin_through(self, org):
        assert require_role(org["admin"], None, Role.FINANCE) == Role.ADMIN
        with pytest.raises(NotAuthorizedError):
            require_role(org["manager"], None, Role.FINANCE)


class TestDelegationWindow:

    def test_window_is_half_open(self, db, org, make_user):
        deputy = make_user(Role.MANAGER)
        delegation = _delegate(db, org["manager"], deputy)

        assert delegation.covers(APPROVE_TRIPS, delegation.starts_at)
        assert not delegation.covers(APPROVE_TRIPS, delegation.ends_at)

    def test_capability_must_match(self, db, org, make_user):
        deputy = make_user(Role.MANAGER)
        _delegate(db, org["manager"], deputy, capabilities="view_reports")
        assert active_delegation(org["manager"].id, deputy.id) is None

    def test_future_delegation_not_active(self, db, org, make_user):
        deputy = make_user(Role.MANAGER)
        _delegate(db, org["manager"], deputy, start=2, end=24)
        assert active_delegation(org["manager"].id, deputy.id) is None


class TestAuthorizeStep:

    def test_designated_approver(self, org):
        step = _step(StepType.DEPARTMENT_MANAGER, org["manager"])
        assert authorize_step(org["manager"], step) == "approver"

    def test_manager_acting_as_employee_is_refused(self, org):
        step = _step(StepType.DEPARTMENT_MANAGER, org["manager"])
        with pytest.raises(NotAuthorizedError) as exc:
            authorize_step(org["manager"], step, Role.EMPLOYEE)
        assert exc.value.required_role == Role.MANAGER

    def test_delegate(self, db, org, make_user):
        deputy = make_user(Role.MANAGER)
        _delegate(db, org["manager"], deputy)
        step = _step(StepType.DEPARTMENT_MANAGER, org["manager"])
        assert authorize_step(deputy, step) == "delegate"

    def test_finance_step(self, org):
        step = _step(StepType.FINANCE_APPROVAL)
        assert authorize_step(org["finance"], step) == "finance"
        with pytest.raises(NotAuthorizedError):
            authorize_step(org["employee"], step)

    def test_admin_override(self, org):
        assert authorize_step(org["admin"], _step(StepType.PROJECT_MANAGER, org["manager"])) == "admin"

    def test_inactive_user(self, db, org):
        org["manager"].is_active = False
        db.session.commit()
        with pytest.raises(NotAuthorizedError):
            authorize_step(org["manager"], _step(StepType.DEPARTMENT_MANAGER, org["manager"]))
