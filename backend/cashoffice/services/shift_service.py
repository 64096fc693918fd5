"""
Register and Shift Management Service

WHY: Track which person has custody of which cash drawer at any moment
and freeze an auditable expected-vs-counted record when custody ends.

DESIGN PRINCIPLES:
- One open shift per register and per user, enforced by partial unique indexes
- Shifts are immutable once closed, never reopened or deleted
- Expected cash is computed from the shift's own ledger rows at close
- Force-close is a recovery path for abandoned shifts and is audited
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Register, Shift, User
from ..models.registers import SHIFT_STATUS_OPEN, SHIFT_STATUS_CLOSED, ACTIVITY_NORMAL, ACTIVITY_NONE
from cashoffice.time_utils import utcnow, normalize_utc
from .audit_service import append_audit_event
from .cash_calculator import calculate_expected, expected_drawer_cash, parse_money, ZERO
from .concurrency import lock_for_update, run_with_retry, storage_guard
from .ledger_reader import fetch_ledger


# =============================================================================
# REGISTER MANAGEMENT
# =============================================================================

def create_register(register_number: str, name: str, location: str | None = None) -> Register:
    """
    Create a new POS register.

    Registers must exist before shifts can be opened on them.
    """
    register_number = (register_number or "").strip()
    name = (name or "").strip()
    if not register_number or not name:
        raise ValidationError("register_number and name are required")

    existing = db.session.query(Register).filter_by(register_number=register_number).first()
    if existing:
        raise ConflictError(
            f"Register '{register_number}' already exists",
            code="REGISTER_EXISTS",
            register_id=existing.id,
        )

    register = Register(
        register_number=register_number,
        name=name,
        location=location,
        is_active=True,
    )

    with storage_guard("create register"):
        db.session.add(register)
        db.session.commit()

    return register


def get_register(register_id: int) -> Register:
    register = db.session.get(Register, register_id)
    if not register:
        raise NotFoundError("Register not found", register_id=register_id)
    return register


def list_registers(include_inactive: bool = False) -> list[Register]:
    query = db.session.query(Register)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(Register.register_number).all()


def deactivate_register(register_id: int) -> Register:
    """
    Deactivate a register (soft delete).

    Registers are never deleted (historical shifts point at them).
    Inactive registers cannot open new shifts.
    """
    register = get_register(register_id)

    open_shift_row = get_open_shift(register_id)
    if open_shift_row:
        raise ConflictError(
            "Cannot deactivate register with an open shift. Close the shift first.",
            code="SHIFT_CONFLICT",
            shift_id=open_shift_row.id,
            register_id=register_id,
        )

    register.is_active = False
    with storage_guard("deactivate register"):
        db.session.commit()

    return register


def get_register_status(register_id: int) -> dict:
    """Register details plus its current open shift (server is the source of truth)."""
    register = get_register(register_id)
    current = get_open_shift(register_id)
    return {
        "register": register.to_dict(),
        "current_shift": current.to_dict() if current else None,
    }


# =============================================================================
# SHIFT LIFECYCLE
# =============================================================================

def _shift_conflict(shift: Shift) -> ConflictError:
    return ConflictError(
        f"Register {shift.register_id} already has an open shift (shift {shift.id})",
        code="SHIFT_CONFLICT",
        shift_id=shift.id,
        register_id=shift.register_id,
        opened_by_user_id=shift.opened_by_user_id,
    )


def _user_shift_conflict(shift: Shift) -> ConflictError:
    return ConflictError(
        f"User already has an open shift (shift {shift.id}) on register {shift.register_id}",
        code="USER_SHIFT_CONFLICT",
        shift_id=shift.id,
        register_id=shift.register_id,
    )


def open_shift(register_id: int, user_id: int, opening_cash) -> Shift:
    """
    Open a new shift on a register.

    Args:
        register_id: Register to open the shift on
        user_id: Staff member taking custody of the drawer
        opening_cash: Float placed in the drawer (>= 0)

    Raises:
        NotFoundError: register or user does not exist
        InvalidStateError: register is inactive
        ValidationError: opening cash is negative or not a number
        ConflictError: the register (SHIFT_CONFLICT) or the user
            (USER_SHIFT_CONFLICT) already holds an open shift
    """
    opening = parse_money(opening_cash, "opening_cash")

    register = get_register(register_id)
    if not register.is_active:
        raise InvalidStateError("Cannot open shift on inactive register", register_id=register_id)

    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found", user_id=user_id)

    existing_open = get_open_shift(register_id)
    if existing_open:
        raise _shift_conflict(existing_open)

    user_open = get_open_shift_for_user(user_id)
    if user_open:
        raise _user_shift_conflict(user_open)

    shift = Shift(
        register_id=register_id,
        opened_by_user_id=user_id,
        status=SHIFT_STATUS_OPEN,
        opening_cash=opening,
        opened_at=utcnow(),
    )

    with storage_guard("open shift"):
        try:
            db.session.add(shift)
            db.session.flush()
        except IntegrityError:
            # Lost the race: a partial unique index rejected a second OPEN row
            db.session.rollback()
            winner = get_open_shift(register_id)
            if winner is not None:
                raise _shift_conflict(winner)
            user_open = get_open_shift_for_user(user_id)
            if user_open is not None:
                raise _user_shift_conflict(user_open)
            raise

        append_audit_event(
            event_type="shift.opened",
            entity_type="shift",
            entity_id=shift.id,
            actor_user_id=user_id,
            register_id=register_id,
            shift_id=shift.id,
            occurred_at=shift.opened_at,
            payload={"opening_cash": opening},
        )
        db.session.commit()

    current_app.logger.info(
        "Shift %s opened on register %s by user %s (float %s)",
        shift.id, register_id, user_id, opening,
    )
    return shift


def _close_locked(
    shift_id: int,
    closing,
    *,
    user_id: int,
    notes: str | None,
    now: datetime | None,
    force: bool,
) -> Shift:
    closing_cash = parse_money(closing, "closing_cash")

    def _op():
        shift = lock_for_update(db.session.query(Shift).filter_by(id=shift_id)).first()

        if not shift:
            raise NotFoundError("Shift not found", shift_id=shift_id)

        if shift.status != SHIFT_STATUS_OPEN:
            raise InvalidStateError(
                "Shift already closed",
                code="SHIFT_ALREADY_CLOSED",
                shift_id=shift.id,
                register_id=shift.register_id,
            )

        closed_at = normalize_utc(now) or utcnow()
        if closed_at < shift.opened_at:
            raise ValidationError("Shift cannot close before it opened", shift_id=shift.id)

        snapshot = fetch_ledger(shift.opened_at, closed_at, shift_id=shift.id)
        amounts = calculate_expected(snapshot)
        expected = expected_drawer_cash(amounts, shift.opening_cash)

        activity_type = ACTIVITY_NORMAL
        note_lines = [notes] if notes else []
        if snapshot.is_empty and Decimal(shift.opening_cash) == ZERO and closing_cash == ZERO:
            activity_type = ACTIVITY_NONE
            note_lines.append("System: No Transactions Shift")

        # Single flush: status and all close fields change together
        shift.status = SHIFT_STATUS_CLOSED
        shift.closed_at = closed_at
        shift.closed_by_user_id = user_id
        shift.closing_cash = closing_cash
        shift.expected_cash = expected
        shift.cash_difference = closing_cash - expected
        shift.activity_type = activity_type
        shift.force_closed = force
        shift.notes = "\n".join(note_lines) or None

        append_audit_event(
            event_type="shift.force_closed" if force else "shift.closed",
            entity_type="shift",
            entity_id=shift.id,
            actor_user_id=user_id,
            register_id=shift.register_id,
            shift_id=shift.id,
            occurred_at=closed_at,
            note=notes,
            payload={
                "opened_by_user_id": shift.opened_by_user_id,
                "closing_cash": closing_cash,
                "expected_cash": expected,
                "cash_difference": shift.cash_difference,
            },
        )

        db.session.commit()
        return shift

    with storage_guard("close shift"):
        return run_with_retry(_op)


def close_shift(
    shift_id: int,
    closing_cash,
    *,
    user_id: int,
    notes: str | None = None,
    now: datetime | None = None,
) -> Shift:
    """
    Close a shift and calculate cash variance.

    Expected cash is derived from the ledger rows linked to this shift in
    [opened_at, now) and includes the opening float.

    IMMUTABLE: Once closed, the shift cannot be reopened or modified.

    Raises:
        NotFoundError: shift does not exist
        InvalidStateError: shift is not OPEN
    """
    shift = _close_locked(shift_id, closing_cash, user_id=user_id, notes=notes, now=now, force=False)
    current_app.logger.info(
        "Shift %s closed by user %s (expected %s, counted %s, difference %s)",
        shift.id, user_id, shift.expected_cash, shift.closing_cash, shift.cash_difference,
    )
    return shift


def force_close_shift(
    shift_id: int,
    closing_cash,
    acting_user_id: int,
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> Shift:
    """
    Close someone else's abandoned shift so the register can be reopened.

    Same effect as close_shift; recorded as shift.force_closed with the
    acting user in the audit trail.
    """
    shift = _close_locked(
        shift_id,
        closing_cash,
        user_id=acting_user_id,
        notes=notes or "Forced close by manager/admin",
        now=now,
        force=True,
    )
    current_app.logger.warning(
        "Shift %s on register %s force-closed by user %s (opened by user %s)",
        shift.id, shift.register_id, acting_user_id, shift.opened_by_user_id,
    )
    return shift


# =============================================================================
# QUERIES
# =============================================================================

def get_shift(shift_id: int) -> Shift:
    shift = db.session.get(Shift, shift_id)
    if not shift:
        raise NotFoundError("Shift not found", shift_id=shift_id)
    return shift


def get_open_shift(register_id: int) -> Shift | None:
    """Get the currently open shift for a register, if any."""
    return db.session.query(Shift).filter_by(
        register_id=register_id,
        status=SHIFT_STATUS_OPEN
    ).first()


def get_open_shift_for_user(user_id: int) -> Shift | None:
    return db.session.query(Shift).filter_by(
        opened_by_user_id=user_id,
        status=SHIFT_STATUS_OPEN
    ).first()


def list_shifts(
    *,
    register_id: int | None = None,
    status: str | None = None,
    closed_by_user_id: int | None = None,
    limit: int = 50,
) -> list[Shift]:
    query = db.session.query(Shift)
    if register_id is not None:
        query = query.filter_by(register_id=register_id)
    if status:
        query = query.filter_by(status=status.upper())
    if closed_by_user_id is not None:
        query = query.filter_by(closed_by_user_id=closed_by_user_id)
    return query.order_by(desc(Shift.opened_at), desc(Shift.id)).limit(limit).all()


def get_shift_summary(shift_id: int, now: datetime | None = None) -> dict:
    """
    Live totals of a shift.

    For an open shift the window ends now; for a closed shift it ends at
    closed_at, so the summary matches what was frozen at close.
    """
    shift = get_shift(shift_id)
    end_at = shift.closed_at if not shift.is_open else (normalize_utc(now) or utcnow())

    amounts = calculate_expected(fetch_ledger(shift.opened_at, end_at, shift_id=shift.id))

    return {
        "shift": shift.to_dict(),
        "opening_cash": str(shift.opening_cash),
        "totals": amounts.to_dict(),
        "net_cash": str(amounts.expected_cash),
        "expected_cash": str(expected_drawer_cash(amounts, shift.opening_cash)),
        "is_closed": not shift.is_open,
        "cash_difference": str(shift.cash_difference) if shift.cash_difference is not None else None,
    }
