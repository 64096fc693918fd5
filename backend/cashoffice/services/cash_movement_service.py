# Overview: Service-layer operations for manual cash movements (pay-ins and payouts) during a shift.

"""
Cash Movement Service

WHY: Money enters or leaves the drawer outside of sales (float top-up,
cash drop to the safe, petty cash payout). Every such movement must be
recorded against the operator's open shift with a reason, otherwise the
drawer count at close cannot reconcile.

EVENT TYPES:
- IN:  Pay-in, adds to expected drawer cash
- OUT: Payout, reduces expected drawer cash
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import desc

from ..errors import InvalidStateError, ValidationError
from ..extensions import db
from ..models import CashMovement
from ..models.ledger import MOVEMENT_IN, VALID_MOVEMENT_TYPES
from cashoffice.time_utils import utcnow, normalize_utc
from .audit_service import append_audit_event
from .cash_calculator import parse_money, round_money
from .concurrency import storage_guard
from .shift_service import get_open_shift_for_user


def record_movement(
    user_id: int,
    type: str,
    amount,
    reason: str,
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> CashMovement:
    """
    Record a pay-in or payout on the user's open shift.

    Raises:
        ValidationError: bad type, non-positive amount or missing reason
        InvalidStateError: the user has no open shift (NO_OPEN_SHIFT)
    """
    type = (type or "").upper()
    if type not in VALID_MOVEMENT_TYPES:
        raise ValidationError("type must be IN or OUT", field="type")

    value = parse_money(amount, "amount")
    if value <= 0:
        raise ValidationError("amount must be greater than zero", field="amount")

    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required", field="reason")

    shift = get_open_shift_for_user(user_id)
    if not shift:
        raise InvalidStateError(
            "An open shift is required to record cash movements",
            code="NO_OPEN_SHIFT",
            user_id=user_id,
        )

    movement = CashMovement(
        type=type,
        amount=value,
        reason=reason,
        notes=notes,
        created_at=normalize_utc(now) or utcnow(),
        shift_id=shift.id,
        operator_id=user_id,
    )

    with storage_guard("record cash movement"):
        db.session.add(movement)
        db.session.flush()
        append_audit_event(
            event_type=f"cash_movement.{type.lower()}",
            entity_type="cash_movement",
            entity_id=movement.id,
            actor_user_id=user_id,
            register_id=shift.register_id,
            shift_id=shift.id,
            occurred_at=movement.created_at,
            note=reason,
            payload={"amount": value},
        )
        db.session.commit()

    current_app.logger.info(
        "Cash movement %s %s %s on shift %s by user %s",
        movement.id, type, value, shift.id, user_id,
    )
    return movement


def list_movements(
    *,
    operator_id: int | None = None,
    shift_id: int | None = None,
    type: str | None = None,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    limit: int = 100,
) -> dict:
    """Movements, newest first, with IN/OUT totals of the returned rows."""
    query = db.session.query(CashMovement)
    if operator_id is not None:
        query = query.filter(CashMovement.operator_id == operator_id)
    if shift_id is not None:
        query = query.filter(CashMovement.shift_id == shift_id)
    if type:
        query = query.filter(CashMovement.type == type.upper())
    if start_at:
        query = query.filter(CashMovement.created_at >= start_at)
    if end_at:
        query = query.filter(CashMovement.created_at < end_at)

    movements = query.order_by(desc(CashMovement.created_at), desc(CashMovement.id)).limit(limit).all()

    total_in = Decimal(0)
    total_out = Decimal(0)
    for m in movements:
        if m.type == MOVEMENT_IN:
            total_in += Decimal(m.amount)
        else:
            total_out += Decimal(m.amount)

    return {
        "movements": [m.to_dict() for m in movements],
        "totals": {
            "in": str(round_money(total_in)),
            "out": str(round_money(total_out)),
            "net": str(round_money(total_in - total_out)),
        },
    }
