"""
Shared pytest fixtures for the PMMIS work-approval test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_contract / make_report / make_task: row factories
    - people: one active user per role plus a curator and project manager
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from pmis import create_app
from pmis.models import db as _db

NOW = datetime(2026, 3, 10, 12, 0, 0)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Create a user holding the given role names."""
    from pmis.models.auth import Role, User, UserRole

    counter = {"n": 0}

    def _make(*roles, full_name=None, email="auto", is_active=True):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            full_name=full_name or f"User {n}",
            email=f"user{n}@pmis.test" if email == "auto" else email,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.flush()
        for name in roles:
            role = Role.query.filter_by(name=name).first()
            if role is None:
                role = Role(name=name, display_name=name.replace("_", " ").title())
                _db.session.add(role)
                _db.session.flush()
            _db.session.add(UserRole(user_id=user.id, role_id=role.id))
        _db.session.commit()
        _db.session.refresh(user)
        return user

    return _make


@pytest.fixture()
def people(make_user):
    """Admin (director), staff, accountant, contractor, curator and project manager."""
    from pmis.models.auth import ACCOUNTANT, CONTRACTOR, PMU_ADMIN, PMU_STAFF

    return {
        "admin": make_user(PMU_ADMIN, full_name="Director"),
        "staff": make_user(PMU_STAFF, full_name="Staff"),
        "accountant": make_user(ACCOUNTANT, full_name="Accountant"),
        "contractor": make_user(CONTRACTOR, full_name="Contractor Rep"),
        "curator": make_user(PMU_STAFF, full_name="Curator"),
        "manager": make_user(PMU_STAFF, full_name="Project Manager"),
    }


@pytest.fixture()
def make_contract(people):
    from pmis.models.contract import Contract, Contractor

    counter = {"n": 0}

    def _make(*, amount=Decimal("100000.00"), curator=..., manager=..., project_id=7):
        counter["n"] += 1
        contractor = Contractor(name=f"Builder LLC {counter['n']}", tax_id="1234567890")
        _db.session.add(contractor)
        _db.session.flush()
        contract = Contract(
            contract_number=f"PMU-2026-{counter['n']:03d}",
            contractor_id=contractor.id,
            contract_amount=amount,
            currency="USD",
            project_id=project_id,
            curator_id=people["curator"].id if curator is ... else curator,
            project_manager_id=people["manager"].id if manager is ... else manager,
            signing_date=date(2026, 1, 15),
        )
        _db.session.add(contract)
        _db.session.commit()
        return contract

    return _make


@pytest.fixture()
def make_report():
    from pmis.models.progress_report import ApprovalStatus, ProgressReport

    def _make(contract, *, percent=Decimal("25.00"), status=ApprovalStatus.DRAFT):
        report = ProgressReport(
            contract_id=contract.id,
            report_date=date(2026, 3, 1),
            completed_percent=percent,
            description="Foundation works",
            approval_status=status,
        )
        _db.session.add(report)
        _db.session.commit()
        return report

    return _make


@pytest.fixture()
def make_task():
    """Insert a task row directly, bypassing the orchestrator."""
    from pmis.models.task import Task, TaskPriority, TaskStatus

    def _make(*, assignee, assigner, due_date=None, status=TaskStatus.NEW, title="Inspect site",
              **links):
        task = Task(
            title=title,
            status=status,
            priority=TaskPriority.NORMAL,
            due_date=due_date or NOW + timedelta(days=10),
            assignee_id=assignee.id,
            assigned_by_id=assigner.id,
            **links,
        )
        _db.session.add(task)
        _db.session.commit()
        return task

    return _make
