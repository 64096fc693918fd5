"""
Pytest fixtures for cash office backend tests.

Provides an in-memory database, users per role with bearer tokens, a
register, and a small ledger factory for payments, refunds and movements.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from cashoffice import create_app
from cashoffice.extensions import db
from cashoffice.models import User, Register, Payment, Refund, CashMovement
from cashoffice.models.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_STAFF
from cashoffice.services import session_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CASH_CLOSING_EPOCH': '2026-01-01T00:00:00Z',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function', autouse=True)
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        db.session.rollback()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


def _make_user(username: str, role: str) -> User:
    user = User(username=username, display_name=username.title(), role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(db_session):
    return _make_user("admin", ROLE_ADMIN)


@pytest.fixture
def manager_user(db_session):
    return _make_user("manager", ROLE_MANAGER)


@pytest.fixture
def staff_user(db_session):
    return _make_user("anna", ROLE_STAFF)


@pytest.fixture
def other_staff_user(db_session):
    return _make_user("ben", ROLE_STAFF)


def _headers(user: User) -> dict:
    _, token = session_service.create_session(user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user):
    return _headers(admin_user)


@pytest.fixture
def manager_headers(manager_user):
    return _headers(manager_user)


@pytest.fixture
def staff_headers(staff_user):
    return _headers(staff_user)


@pytest.fixture
def other_staff_headers(other_staff_user):
    return _headers(other_staff_user)


@pytest.fixture
def register(db_session):
    reg = Register(register_number="REG-01", name="Front Desk", location="Lobby", is_active=True)
    db_session.add(reg)
    db_session.commit()
    return reg


class Ledger:
    """Writes ledger rows the way the payments component would."""

    def payment(self, amount, method="cash", *, at: datetime, operator=None, shift=None):
        row = Payment(
            amount=Decimal(str(amount)),
            method=method,
            status="completed",
            refunded_total=Decimal("0"),
            paid_at=at,
            operator_id=operator.id if operator else None,
            shift_id=shift.id if shift else None,
        )
        db.session.add(row)
        db.session.commit()
        return row

    def refund(self, payment, amount, *, at: datetime, operator=None, shift=None):
        amount = Decimal(str(amount))
        row = Refund(
            payment_id=payment.id,
            amount=amount,
            reason="Member cancelled",
            refunded_at=at,
            operator_id=operator.id if operator else None,
            shift_id=shift.id if shift else None,
        )
        payment.refunded_total = Decimal(payment.refunded_total) + amount
        payment.status = "refunded" if payment.refunded_total >= Decimal(payment.amount) else "partially_refunded"
        db.session.add(row)
        db.session.commit()
        return row

    def movement(self, type, amount, *, at: datetime, operator=None, shift=None, reason="Float top-up"):
        row = CashMovement(
            type=type,
            amount=Decimal(str(amount)),
            reason=reason,
            created_at=at,
            operator_id=operator.id if operator else None,
            shift_id=shift.id if shift else None,
        )
        db.session.add(row)
        db.session.commit()
        return row


@pytest.fixture
def ledger(db_session):
    return Ledger()
