"""
CLI command tests.

Verifies that an abandoned shift is only force-closed with a counted
drawer amount.
"""

from decimal import Decimal

from cashoffice.extensions import db
from cashoffice.models import Shift
from cashoffice.services import shift_service


def test_force_close_requires_count(app, register, staff_user, manager_user):
    shift = shift_service.open_shift(register.id, staff_user.id, "40")

    result = app.test_cli_runner().invoke(
        args=["shifts", "force-close", str(shift.id), "--acting-user", "manager"],
    )

    assert result.exit_code != 0
    assert "--closing-cash" in result.output
    db.session.expire_all()
    assert db.session.get(Shift, shift.id).status == "OPEN"


def test_force_close_records_count(app, register, staff_user, manager_user):
    shift = shift_service.open_shift(register.id, staff_user.id, "40")

    result = app.test_cli_runner().invoke(
        args=["shifts", "force-close", str(shift.id), "--closing-cash", "35.00", "--acting-user", "manager"],
    )

    assert "PASS" in result.output
    db.session.expire_all()
    closed = db.session.get(Shift, shift.id)
    assert closed.force_closed is True
    assert closed.cash_difference == Decimal("-5.00")


def test_force_close_needs_manager(app, register, staff_user):
    shift = shift_service.open_shift(register.id, staff_user.id, "40")

    result = app.test_cli_runner().invoke(
        args=["shifts", "force-close", str(shift.id), "--closing-cash", "40", "--acting-user", "anna"],
    )

    assert "FAIL" in result.output
    db.session.expire_all()
    assert db.session.get(Shift, shift.id).status == "OPEN"
