"""Tests for the budget ledger."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from expenseflow import ledger
from expenseflow.errors import BudgetExceededError, ImmutableRecordError, ValidationError
from expenseflow.models import BudgetLedgerEntry, LedgerTransaction, OwnerKind, utcnow


def _entries(owner_kind, owner_id):
    return list(reversed(ledger.history(owner_kind, owner_id)))


class TestReserveRestore:

    def test_round_trip_leaves_balance_unchanged(self, db, org):
        department = org["department"]
        before = ledger.available_balance(department)

        ledger.reserve(OwnerKind.DEPARTMENT, department.id, Decimal("80.00"), reference=7)
        ledger.restore(OwnerKind.DEPARTMENT, department.id, Decimal("80.00"), reference=7)
        db.session.commit()

        assert ledger.available_balance(department) == before
        assert department.available_budget == before
        rows = _entries(OwnerKind.DEPARTMENT, department.id)
        assert [r.transaction_type for r in rows] == [LedgerTransaction.ALLOCATION, LedgerTransaction.DEALLOCATION]
        assert rows[0].amount + rows[1].amount == 0
        assert rows[0].running_balance == Decimal("120.00")
        assert rows[1].running_balance == Decimal("200.00")

    def test_reserve_beyond_balance_fails_without_row(self, db, project_org):
        project = project_org["project"]
        with pytest.raises(BudgetExceededError) as exc:
            ledger.reserve(OwnerKind.PROJECT, project.id, Decimal("300.00"), reference=1)
        db.session.rollback()

        assert exc.value.excess == Decimal("100.00")
        types = [r.transaction_type for r in ledger.history(OwnerKind.PROJECT, project.id)]
        assert types == [LedgerTransaction.INITIAL]

    def test_override_allows_negative_balance(self, db, project_org):
        project = project_org["project"]
        balance = ledger.reserve(OwnerKind.PROJECT, project.id, Decimal("300.00"), reference=1, allow_negative=True)
        db.session.commit()
        assert balance == Decimal("-100.00")
        assert project.available_budget == Decimal("-100.00")

    def test_reservation_for_nets_allocations(self, db, org):
        department = org["department"]
        ledger.reserve(OwnerKind.DEPARTMENT, department.id, Decimal("30.00"), reference=5)
        assert ledger.reservation_for(5) == Decimal("30.00")
        ledger.restore(OwnerKind.DEPARTMENT, department.id, Decimal("30.00"), reference=5)
        assert ledger.reservation_for(5) == Decimal("0.00")


class TestCheckAgreesWithReserve:

    @pytest.mark.parametrize("cost", ["199.99", "200.00", "200.01"])
    def test_same_verdict(self, db, org, cost):
        department = org["department"]
        check = ledger.check_for_trip(OwnerKind.DEPARTMENT, department.id, Decimal(cost))
        try:
            ledger.reserve(OwnerKind.DEPARTMENT, department.id, Decimal(cost), reference=1)
            reserved = True
        except BudgetExceededError as exc:
            reserved = False
            assert exc.excess == check.excess
        db.session.rollback()
        assert check.can_approve is reserved

    def test_exclude_trip_adds_back_its_reservation(self, db, org):
        department = org["department"]
        ledger.reserve(OwnerKind.DEPARTMENT, department.id, Decimal("150.00"), reference=9)
        db.session.commit()

        assert not ledger.check_for_trip(OwnerKind.DEPARTMENT, department.id, Decimal("150.00")).can_approve
        assert ledger.check_for_trip(OwnerKind.DEPARTMENT, department.id, Decimal("150.00"),
                                     exclude_trip_id=9).can_approve


class TestMonthlyBonus:

    def test_active_bonus_counts_for_departments(self, db, org):
        department = org["department"]
        ledger.grant_monthly_bonus(department.id, Decimal("50.00"), org["finance"])
        db.session.commit()
        assert ledger.available_balance(department) == Decimal("250.00")
        assert ledger.check_for_trip(OwnerKind.DEPARTMENT, department.id, Decimal("240.00")).can_approve

    def test_expired_bonus_is_ignored(self, db, org):
        department = org["department"]
        department.monthly_budget_bonus = Decimal("50.00")
        department.monthly_budget_bonus_reset_at = utcnow() - timedelta(days=1)
        db.session.commit()
        assert ledger.available_balance(department) == Decimal("200.00")

    def test_reset_clears_bonus_and_counts(self, db, org, make_department):
        other = make_department(name="Logistics")
        ledger.grant_monthly_bonus(org["department"].id, Decimal("50.00"), org["finance"])
        ledger.grant_monthly_bonus(other.id, Decimal("25.00"), org["finance"])
        db.session.commit()

        assert ledger.reset_monthly_bonus(org["department"].id) == 1
        assert ledger.reset_monthly_bonus() == 1
        db.session.commit()

        assert ledger.available_balance(org["department"]) == Decimal("200.00")
        assert org["department"].available_budget == Decimal("200.00")
        assert ledger.reset_monthly_bonus() == 0

    def test_regrant_records_only_the_difference(self, db, org):
        department = org["department"]
        ledger.grant_monthly_bonus(department.id, Decimal("50.00"), org["finance"])
        ledger.grant_monthly_bonus(department.id, Decimal("80.00"), org["finance"])
        ledger.reset_monthly_bonus(department.id)
        db.session.commit()

        rows = _entries(OwnerKind.DEPARTMENT, department.id)
        assert [r.amount for r in rows] == [Decimal("50.00"), Decimal("30.00"), Decimal("-80.00")]
        assert [r.running_balance for r in rows] == [Decimal("250.00"), Decimal("280.00"), Decimal("200.00")]
        assert sum(r.amount for r in rows) == Decimal("0.00")

    def test_regrant_same_amount_writes_no_row(self, db, org):
        department = org["department"]
        ledger.grant_monthly_bonus(department.id, Decimal("50.00"), org["finance"])
        ledger.grant_monthly_bonus(department.id, Decimal("50.00"), org["finance"])
        db.session.commit()
        assert len(_entries(OwnerKind.DEPARTMENT, department.id)) == 1

    def test_grant_after_expiry_counts_in_full(self, db, org):
        department = org["department"]
        department.monthly_budget_bonus = Decimal("50.00")
        department.monthly_budget_bonus_reset_at = utcnow() - timedelta(days=1)
        db.session.commit()

        ledger.grant_monthly_bonus(department.id, Decimal("40.00"), org["finance"])
        db.session.commit()

        latest = ledger.history(OwnerKind.DEPARTMENT, department.id)[0]
        assert latest.amount == Decimal("40.00")
        assert latest.running_balance == Decimal("240.00")

    def test_reset_records_timestamp(self, db, org):
        department = org["department"]
        ledger.grant_monthly_bonus(department.id, Decimal("50.00"), org["finance"])
        db.session.commit()
        before = utcnow()

        assert ledger.reset_monthly_bonus(department.id) == 1
        db.session.commit()

        assert department.monthly_budget_bonus == Decimal("0.00")
        assert department.monthly_budget_bonus_reset_at is None
        assert department.monthly_budget_bonus_last_reset_at >= before

    def test_reset_skips_expired_bonus(self, db, org):
        department = org["department"]
        department.monthly_budget_bonus = Decimal("50.00")
        department.monthly_budget_bonus_reset_at = utcnow() - timedelta(days=1)
        db.session.commit()

        assert ledger.reset_monthly_bonus() == 0
        db.session.commit()
        assert department.monthly_budget_bonus_last_reset_at is None
        assert ledger.history(OwnerKind.DEPARTMENT, department.id) == []

    def test_bonus_must_be_positive(self, org):
        with pytest.raises(ValidationError):
            ledger.grant_monthly_bonus(org["department"].id, Decimal("0"), org["finance"])


class TestAdjustments:

    def test_adjust_changes_balance_and_logs_row(self, db, project_org):
        project = project_org["project"]
        balance = ledger.adjust(OwnerKind.PROJECT, project.id, Decimal("100.00"), project_org["finance"])
        db.session.commit()

        assert balance == Decimal("300.00")
        assert project.original_budget == Decimal("200.00")
        latest = ledger.history(OwnerKind.PROJECT, project.id)[0]
        assert latest.transaction_type == LedgerTransaction.ADJUSTMENT
        assert latest.running_balance == Decimal("300.00")

    def test_project_opening_row(self, project_org):
        rows = ledger.history(OwnerKind.PROJECT, project_org["project"].id)
        assert len(rows) == 1
        assert rows[0].transaction_type == LedgerTransaction.INITIAL
        assert rows[0].amount == Decimal("200.00")


class TestProjectLifecycle:

    def test_expire_projects(self, db, org, make_project, make_user):
        pm = make_user("Manager")
        old = make_project(name="Old", manager=pm, expiry_date=date(2025, 1, 1))
        current = make_project(name="Current", manager=pm, expiry_date=date(2030, 1, 1))

        assert ledger.expire_projects(today=date(2025, 6, 1)) == 1
        db.session.commit()
        assert old.is_active is False
        assert current.is_active is True

    def test_activation_refused_without_budget(self, db, project_org):
        project = project_org["project"]
        project.is_active = False
        db.session.commit()
        ledger.reserve(OwnerKind.PROJECT, project.id, Decimal("200.00"), reference=3)
        db.session.commit()

        with pytest.raises(ValidationError):
            ledger.activate_project(project.id, project_org["finance"])


class TestAppendOnly:

    def test_ledger_rows_cannot_be_edited(self, db, org):
        ledger.reserve(OwnerKind.DEPARTMENT, org["department"].id, Decimal("10.00"), reference=1)
        db.session.commit()
        row = BudgetLedgerEntry.query.first()
        row.amount = Decimal("-1.00")
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()
