# Overview: Read-only windowed queries over payments, refunds and cash movements.

"""
Ledger Reader

WHY: Shift close, closing preview and closing commit all need the same
view of the money that moved through the drawer in a time window.
Keeping the window semantics in one place is what prevents a row from
being counted twice at a boundary.

WINDOW SEMANTICS (applied identically to every row type):
- Half-open interval [start_at, end_at)
- Payment   -> paid_at
- Refund    -> refunded_at
- Movement  -> created_at

ALL-OR-NOTHING: Payments, refunds and movements are read with a single
UNION ALL statement, so every row comes from the same database snapshot
whatever the isolation level or the state of the caller's transaction.
If the statement fails the whole read fails with StorageError; callers
never see a partial snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import literal, null, select, union_all
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StorageError, ValidationError
from ..extensions import db
from ..models import Payment, Refund, CashMovement


KIND_PAYMENT = "payment"
KIND_REFUND = "refund"
KIND_MOVEMENT = "movement"


@dataclass(frozen=True)
class PaymentRow:
    id: int
    amount: Decimal
    method: str
    status: str
    paid_at: datetime
    shift_id: int | None
    operator_id: int | None


@dataclass(frozen=True)
class RefundRow:
    id: int
    payment_id: int
    amount: Decimal
    # Tender of the original payment; the refund is netted against it
    method: str
    refunded_at: datetime
    shift_id: int | None
    operator_id: int | None


@dataclass(frozen=True)
class CashMovementRow:
    id: int
    type: str
    amount: Decimal
    reason: str
    created_at: datetime
    shift_id: int | None
    operator_id: int | None


@dataclass(frozen=True)
class LedgerSnapshot:
    start_at: datetime
    end_at: datetime
    payments: list[PaymentRow] = field(default_factory=list)
    refunds: list[RefundRow] = field(default_factory=list)
    cash_movements: list[CashMovementRow] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.payments or self.refunds or self.cash_movements)


def _in_window(column, start_at: datetime, end_at: datetime):
    return (column >= start_at) & (column < end_at)


def _payment_select(start_at, end_at, employee_id, shift_id):
    stmt = select(
        literal(KIND_PAYMENT).label("kind"),
        Payment.id.label("id"),
        Payment.id.label("payment_id"),
        Payment.amount.label("amount"),
        Payment.method.label("method"),
        Payment.status.label("status"),
        null().label("movement_type"),
        null().label("reason"),
        Payment.paid_at.label("occurred_at"),
        Payment.shift_id.label("shift_id"),
        Payment.operator_id.label("operator_id"),
    ).where(_in_window(Payment.paid_at, start_at, end_at))

    if employee_id is not None:
        stmt = stmt.where(Payment.operator_id == employee_id)
    if shift_id is not None:
        stmt = stmt.where(Payment.shift_id == shift_id)
    return stmt


def _refund_select(start_at, end_at, employee_id, shift_id):
    stmt = (
        select(
            literal(KIND_REFUND).label("kind"),
            Refund.id.label("id"),
            Refund.payment_id.label("payment_id"),
            Refund.amount.label("amount"),
            Payment.method.label("method"),
            null().label("status"),
            null().label("movement_type"),
            null().label("reason"),
            Refund.refunded_at.label("occurred_at"),
            Refund.shift_id.label("shift_id"),
            Refund.operator_id.label("operator_id"),
        )
        .join_from(Refund, Payment, Refund.payment_id == Payment.id)
        .where(_in_window(Refund.refunded_at, start_at, end_at))
    )

    if employee_id is not None:
        stmt = stmt.where(Refund.operator_id == employee_id)
    if shift_id is not None:
        stmt = stmt.where(Refund.shift_id == shift_id)
    return stmt


def _movement_select(start_at, end_at, employee_id, shift_id):
    stmt = select(
        literal(KIND_MOVEMENT).label("kind"),
        CashMovement.id.label("id"),
        null().label("payment_id"),
        CashMovement.amount.label("amount"),
        null().label("method"),
        null().label("status"),
        CashMovement.type.label("movement_type"),
        CashMovement.reason.label("reason"),
        CashMovement.created_at.label("occurred_at"),
        CashMovement.shift_id.label("shift_id"),
        CashMovement.operator_id.label("operator_id"),
    ).where(_in_window(CashMovement.created_at, start_at, end_at))

    if employee_id is not None:
        stmt = stmt.where(CashMovement.operator_id == employee_id)
    if shift_id is not None:
        stmt = stmt.where(CashMovement.shift_id == shift_id)
    return stmt


def fetch_ledger(
    start_at: datetime,
    end_at: datetime,
    *,
    employee_id: int | None = None,
    shift_id: int | None = None,
) -> LedgerSnapshot:
    """
    Read every ledger row in [start_at, end_at).

    Args:
        start_at: inclusive lower bound (UTC-naive)
        end_at: exclusive upper bound (UTC-naive)
        employee_id: only rows whose operator_id matches (refunds: who paid out)
        shift_id: only rows linked to this shift

    Raises:
        ValidationError: start_at is after end_at
        StorageError: the read failed
    """
    if start_at is None or end_at is None:
        raise ValidationError("start_at and end_at are required")
    if start_at > end_at:
        raise ValidationError("start_at must not be after end_at")

    payments: list[PaymentRow] = []
    refunds: list[RefundRow] = []
    movements: list[CashMovementRow] = []

    try:
        stmt = union_all(
            _payment_select(start_at, end_at, employee_id, shift_id),
            _refund_select(start_at, end_at, employee_id, shift_id),
            _movement_select(start_at, end_at, employee_id, shift_id),
        )
        stmt = stmt.order_by(stmt.selected_columns.occurred_at, stmt.selected_columns.id)
        rows = db.session.execute(stmt).all()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError(f"Ledger read failed: {exc.__class__.__name__}") from exc

    for row in rows:
        if row.kind == KIND_PAYMENT:
            payments.append(PaymentRow(
                id=row.id,
                amount=Decimal(row.amount),
                method=(row.method or "").lower(),
                status=row.status,
                paid_at=row.occurred_at,
                shift_id=row.shift_id,
                operator_id=row.operator_id,
            ))
        elif row.kind == KIND_REFUND:
            refunds.append(RefundRow(
                id=row.id,
                payment_id=row.payment_id,
                amount=Decimal(row.amount),
                method=(row.method or "").lower(),
                refunded_at=row.occurred_at,
                shift_id=row.shift_id,
                operator_id=row.operator_id,
            ))
        else:
            movements.append(CashMovementRow(
                id=row.id,
                type=(row.movement_type or "").upper(),
                amount=Decimal(row.amount),
                reason=row.reason,
                created_at=row.occurred_at,
                shift_id=row.shift_id,
                operator_id=row.operator_id,
            ))

    return LedgerSnapshot(
        start_at=start_at,
        end_at=end_at,
        payments=payments,
        refunds=refunds,
        cash_movements=movements,
    )
