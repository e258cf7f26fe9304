"""Tests for lost-update detection inside a unit of work."""

import pytest
from sqlalchemy.exc import OperationalError

from expenseflow import approvals, ledger, workflow
from expenseflow.audit import get_audit_trail
from expenseflow.errors import ConcurrencyConflictError
from expenseflow.models import LedgerTransaction, OwnerKind, RequestStatus, StepStatus, TripRequest
from expenseflow.utils import unit_of_work


def _bump_version_mid_decision(monkeypatch, db, trip_id):
    """Another writer commits a change to the trip after decide() has locked and read it."""
    table = TripRequest.__table__
    original = workflow.project_status

    def interleaved(steps):
        db.session.execute(
            table.update().where(table.c.id == trip_id).values(version=table.c.version + 1)
        )
        return original(steps)

    monkeypatch.setattr(workflow, "project_status", interleaved)


class TestVersionConflict:

    def test_stale_trip_aborts_the_whole_decision(self, monkeypatch, db, project_org, trip_payload):
        project = project_org["project"]
        trip = approvals.create_trip_request(
            trip_payload(project_id=project.id, cost="60"), project_org["employee"]
        )
        audit_rows = len(get_audit_trail())
        _bump_version_mid_decision(monkeypatch, db, trip.id)

        with pytest.raises(ConcurrencyConflictError) as exc:
            approvals.decide(trip.id, project_org["pm"], True)
        monkeypatch.undo()

        assert exc.value.code == "CONCURRENCY_CONFLICT"
        assert exc.value.details["retryable"] is True
        trip = approvals.get_trip(trip.id)
        assert trip.status == RequestStatus.PENDING_PROJECT
        assert approvals.get_workflow_steps(trip.id)[0].status == StepStatus.PENDING
        assert [e.transaction_type for e in ledger.history(OwnerKind.PROJECT, project.id)] == [
            LedgerTransaction.INITIAL
        ]
        assert ledger.available_balance(project) == project.original_budget
        assert len(approvals.get_status_history(trip.id)) == 1
        assert len(get_audit_trail()) == audit_rows

    def test_retry_after_conflict_succeeds(self, monkeypatch, db, project_org, trip_payload):
        trip = approvals.create_trip_request(
            trip_payload(project_id=project_org["project"].id, cost="60"), project_org["employee"]
        )
        _bump_version_mid_decision(monkeypatch, db, trip.id)
        with pytest.raises(ConcurrencyConflictError):
            approvals.decide(trip.id, project_org["pm"], True)
        monkeypatch.undo()

        trip = approvals.decide(trip.id, project_org["pm"], True)
        assert trip.status == RequestStatus.PENDING_FINANCE


class TestLockFailure:

    def test_operational_error_is_a_conflict(self, db, org):
        with pytest.raises(ConcurrencyConflictError):
            with unit_of_work():
                org["department"].name = "Renamed"
                db.session.flush()
                raise OperationalError("UPDATE departments", {}, Exception("database is locked"))

        db.session.expire_all()
        assert org["department"].name == "Operations"
