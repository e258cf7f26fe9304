"""Shared fixtures: application, fresh schema per test, organisation factories."""

from datetime import date
from decimal import Decimal

import pytest

from config import TestConfig
from expenseflow import create_app
from expenseflow.extensions import db as _db
from expenseflow.models import Department, KmRate, Project, Role, User


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=Role.EMPLOYEE, department=None, username=None, password="secret"):
        counter["n"] += 1
        user = User(
            username=username or f"{role.lower()}{counter['n']}",
            full_name=f"{role} {counter['n']}",
            role=role,
            department_id=department.id if department else None,
            is_active=True,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def make_department(db):
    def _make(name="Operations", budget="200.00", manager=None, second=None, third=None,
              third_required=False):
        department = Department(
            name=name,
            budget=Decimal(budget),
            budget_adjustments=Decimal("0.00"),
            monthly_budget_bonus=Decimal("0.00"),
            available_budget=Decimal(budget),
            manager_id=manager.id if manager else None,
            second_manager_id=second.id if second else None,
            third_manager_id=third.id if third else None,
            third_manager_required=third_required,
        )
        db.session.add(department)
        db.session.commit()
        return department

    return _make


@pytest.fixture
def make_project(db):
    from expenseflow import ledger

    def _make(name="Bridge", budget="200.00", manager=None, second=None, department=None,
              expiry_date=None):
        project = Project(
            name=name,
            original_budget=Decimal(budget),
            budget_adjustments=Decimal("0.00"),
            available_budget=Decimal(budget),
            manager_id=manager.id if manager else None,
            second_manager_id=second.id if second else None,
            department_id=department.id if department else None,
            expiry_date=expiry_date,
        )
        db.session.add(project)
        db.session.flush()
        ledger.record_initial(project)
        db.session.commit()
        return project

    return _make


@pytest.fixture
def km_rate(db):
    rate = KmRate(rate_value=Decimal("0.155"), effective_from=date(2025, 1, 1), effective_to=None,
                  description="Standard")
    db.session.add(rate)
    db.session.commit()
    return rate


@pytest.fixture
def org(make_user, make_department):
    """Department with one manager, an employee in it, and a Finance user."""
    manager = make_user(Role.MANAGER, username="dept_manager")
    department = make_department(manager=manager)
    employee = make_user(Role.EMPLOYEE, department=department, username="employee")
    finance = make_user(Role.FINANCE, username="finance")
    admin = make_user(Role.ADMIN, username="admin")
    return {
        "manager": manager,
        "department": department,
        "employee": employee,
        "finance": finance,
        "admin": admin,
    }


@pytest.fixture
def project_org(org, make_user, make_project):
    pm = make_user(Role.MANAGER, username="project_manager")
    project = make_project(manager=pm, department=org["department"])
    return {**org, "pm": pm, "project": project}


@pytest.fixture
def trip_payload():
    """Builder for a valid trip creation payload."""

    def _payload(**overrides):
        payload = {
            "trip_date": "2025-03-10",
            "origin": "Amman",
            "destination": "Zarqa",
            "purpose": "Site visit",
            "trip_type": "Planned",
            "cost_method": "direct",
            "cost": "50.00",
        }
        payload.update(overrides)
        return payload

    return _payload
