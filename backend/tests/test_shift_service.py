"""
Shift lifecycle tests.

Verifies:
- One open shift per register (service check and storage-level index)
- Expected drawer cash at close includes the opening float
- Force-close is audited and frees the register
- Empty zero-float shifts are flagged NO_ACTIVITY
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from cashoffice.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from cashoffice.extensions import db
from cashoffice.models import AuditEvent, Shift
from cashoffice.services import audit_service, shift_service


# =============================================================================
# OPEN
# =============================================================================


class TestOpenShift:

    def test_second_open_on_register_conflicts(self, register, staff_user, other_staff_user):
        first = shift_service.open_shift(register.id, staff_user.id, "100.00")

        with pytest.raises(ConflictError) as exc:
            shift_service.open_shift(register.id, other_staff_user.id, "50.00")

        assert exc.value.code == "SHIFT_CONFLICT"
        assert exc.value.details["shift_id"] == first.id
        assert exc.value.details["register_id"] == register.id
        assert exc.value.to_dict()["shift_id"] == first.id

    def test_user_cannot_hold_two_registers(self, register, staff_user):
        other = shift_service.create_register("REG-02", "Bar")
        shift_service.open_shift(register.id, staff_user.id, 0)

        with pytest.raises(ConflictError) as exc:
            shift_service.open_shift(other.id, staff_user.id, 0)

        assert exc.value.code == "USER_SHIFT_CONFLICT"

    def test_negative_float_rejected(self, register, staff_user):
        with pytest.raises(ValidationError):
            shift_service.open_shift(register.id, staff_user.id, "-1")

    def test_inactive_register_rejected(self, register, staff_user):
        shift_service.deactivate_register(register.id)
        with pytest.raises(InvalidStateError):
            shift_service.open_shift(register.id, staff_user.id, 0)

    def test_unknown_register(self, staff_user):
        with pytest.raises(NotFoundError):
            shift_service.open_shift(9999, staff_user.id, 0)

    def test_storage_rejects_second_open_row(self, register, staff_user, other_staff_user):
        db.session.add(Shift(register_id=register.id, opened_by_user_id=staff_user.id, status="OPEN", opening_cash=0))
        db.session.commit()

        db.session.add(Shift(register_id=register.id, opened_by_user_id=other_staff_user.id, status="OPEN", opening_cash=0))
        with pytest.raises(IntegrityError):
            db.session.flush()
        db.session.rollback()

    def test_storage_rejects_second_open_row_for_user(self, register, staff_user):
        other = shift_service.create_register("REG-02", "Bar")
        db.session.add(Shift(register_id=register.id, opened_by_user_id=staff_user.id, status="OPEN", opening_cash=0))
        db.session.commit()

        db.session.add(Shift(register_id=other.id, opened_by_user_id=staff_user.id, status="OPEN", opening_cash=0))
        with pytest.raises(IntegrityError):
            db.session.flush()
        db.session.rollback()

    def test_open_race_on_register_reports_winner(self, register, staff_user, other_staff_user, monkeypatch):
        winner = shift_service.open_shift(register.id, staff_user.id, "100")
        real_lookup = shift_service.get_open_shift
        calls = []

        def stale_then_real(register_id):
            # The first lookup runs before the winner's row is visible
            calls.append(register_id)
            return None if len(calls) == 1 else real_lookup(register_id)

        monkeypatch.setattr(shift_service, "get_open_shift", stale_then_real)

        with pytest.raises(ConflictError) as exc:
            shift_service.open_shift(register.id, other_staff_user.id, "50")

        assert exc.value.code == "SHIFT_CONFLICT"
        assert exc.value.details["shift_id"] == winner.id
        assert exc.value.details["register_id"] == register.id
        assert db.session.query(Shift).filter_by(status="OPEN").count() == 1

    def test_open_race_for_user_reports_held_shift(self, register, staff_user, monkeypatch):
        other = shift_service.create_register("REG-02", "Bar")
        held = shift_service.open_shift(register.id, staff_user.id, "0")
        real_lookup = shift_service.get_open_shift_for_user
        calls = []

        def stale_then_real(user_id):
            calls.append(user_id)
            return None if len(calls) == 1 else real_lookup(user_id)

        monkeypatch.setattr(shift_service, "get_open_shift_for_user", stale_then_real)

        with pytest.raises(ConflictError) as exc:
            shift_service.open_shift(other.id, staff_user.id, "0")

        assert exc.value.code == "USER_SHIFT_CONFLICT"
        assert exc.value.details["shift_id"] == held.id
        assert db.session.query(Shift).filter_by(opened_by_user_id=staff_user.id, status="OPEN").count() == 1

    def test_open_writes_audit_event(self, register, staff_user):
        shift = shift_service.open_shift(register.id, staff_user.id, "25")
        event = db.session.query(AuditEvent).filter_by(event_type="shift.opened", shift_id=shift.id).one()
        assert event.actor_user_id == staff_user.id


# =============================================================================
# CLOSE
# =============================================================================


class TestCloseShift:

    def test_expected_cash_includes_float(self, register, staff_user, ledger):
        shift = shift_service.open_shift(register.id, staff_user.id, "100.00")
        t = shift.opened_at
        payment = ledger.payment("250.00", at=t + timedelta(minutes=5), operator=staff_user, shift=shift)
        ledger.refund(payment, "50.00", at=t + timedelta(minutes=10), operator=staff_user, shift=shift)

        closed = shift_service.close_shift(shift.id, "300.00", user_id=staff_user.id, now=t + timedelta(hours=1))

        assert closed.status == "CLOSED"
        assert closed.expected_cash == Decimal("300.00")
        assert closed.cash_difference == Decimal("0.00")
        assert closed.activity_type == "NORMAL"
        assert closed.force_closed is False

    def test_summary_matches_close(self, register, staff_user, ledger):
        shift = shift_service.open_shift(register.id, staff_user.id, "100.00")
        t = shift.opened_at
        ledger.payment("250.00", at=t + timedelta(minutes=5), shift=shift)
        ledger.movement("OUT", "20.00", at=t + timedelta(minutes=6), shift=shift)

        summary = shift_service.get_shift_summary(shift.id, now=t + timedelta(hours=1))
        closed = shift_service.close_shift(shift.id, "330.00", user_id=staff_user.id, now=t + timedelta(hours=1))

        assert summary["expected_cash"] == "330.00"
        assert summary["net_cash"] == "230.00"
        assert closed.expected_cash == Decimal(summary["expected_cash"])

    def test_shortage_is_not_clamped(self, register, staff_user, ledger):
        shift = shift_service.open_shift(register.id, staff_user.id, "0")
        ledger.payment("50.00", at=shift.opened_at + timedelta(minutes=1), shift=shift)

        closed = shift_service.close_shift(shift.id, "45.00", user_id=staff_user.id,
                                           now=shift.opened_at + timedelta(hours=1))
        assert closed.cash_difference == Decimal("-5.00")

    def test_other_shifts_rows_ignored(self, register, staff_user, other_staff_user, ledger):
        shift = shift_service.open_shift(register.id, staff_user.id, "0")
        ledger.payment("99.00", at=shift.opened_at + timedelta(minutes=1))

        closed = shift_service.close_shift(shift.id, "0", user_id=staff_user.id,
                                           now=shift.opened_at + timedelta(hours=1))
        assert closed.expected_cash == Decimal("0.00")

    def test_close_twice(self, register, staff_user):
        shift = shift_service.open_shift(register.id, staff_user.id, "10")
        shift_service.close_shift(shift.id, "10", user_id=staff_user.id)

        with pytest.raises(InvalidStateError) as exc:
            shift_service.close_shift(shift.id, "10", user_id=staff_user.id)
        assert exc.value.code == "SHIFT_ALREADY_CLOSED"

    def test_close_frees_register(self, register, staff_user, other_staff_user):
        shift = shift_service.open_shift(register.id, staff_user.id, "10")
        shift_service.close_shift(shift.id, "10", user_id=staff_user.id)

        reopened = shift_service.open_shift(register.id, other_staff_user.id, "10")
        assert reopened.id != shift.id

    def test_no_activity_detection(self, register, staff_user):
        shift = shift_service.open_shift(register.id, staff_user.id, "0")
        closed = shift_service.close_shift(shift.id, "0", user_id=staff_user.id)

        assert closed.activity_type == "NO_ACTIVITY"
        assert "No Transactions" in closed.notes

    def test_float_only_shift_is_normal(self, register, staff_user):
        shift = shift_service.open_shift(register.id, staff_user.id, "50")
        closed = shift_service.close_shift(shift.id, "50", user_id=staff_user.id)
        assert closed.activity_type == "NORMAL"


# =============================================================================
# FORCE CLOSE
# =============================================================================


class TestForceClose:

    def test_force_close_is_audited(self, register, staff_user, manager_user, other_staff_user):
        shift = shift_service.open_shift(register.id, staff_user.id, "20")

        closed = shift_service.force_close_shift(shift.id, "20", manager_user.id)

        assert closed.force_closed is True
        assert closed.closed_by_user_id == manager_user.id
        assert closed.notes == "Forced close by manager/admin"

        events = audit_service.list_audit_events(entity_type="shift", entity_id=shift.id)
        assert [e.event_type for e in events] == ["shift.opened", "shift.force_closed"]
        assert events[-1].actor_user_id == manager_user.id

        # Register is free again
        assert shift_service.open_shift(register.id, other_staff_user.id, "0").status == "OPEN"

    def test_deactivate_with_open_shift_conflicts(self, register, staff_user):
        shift = shift_service.open_shift(register.id, staff_user.id, "0")
        with pytest.raises(ConflictError) as exc:
            shift_service.deactivate_register(register.id)
        assert exc.value.details["shift_id"] == shift.id
