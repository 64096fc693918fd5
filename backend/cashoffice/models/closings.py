from __future__ import annotations

from sqlalchemy import event, inspect

from ..extensions import db
from ..errors import InvalidStateError
from cashoffice.time_utils import to_utc_z


PERIOD_MANUAL = "manual"
PERIOD_DAILY = "daily"
PERIOD_MONTHLY = "monthly"
PERIOD_CUSTOM = "custom"
PERIOD_SHIFT = "shift"

VALID_PERIOD_TYPES = (PERIOD_MANUAL, PERIOD_DAILY, PERIOD_MONTHLY, PERIOD_CUSTOM, PERIOD_SHIFT)

ADJUSTMENT_ADD = "ADD"
ADJUSTMENT_SUBTRACT = "SUBTRACT"

VALID_ADJUSTMENT_TYPES = (ADJUSTMENT_ADD, ADJUSTMENT_SUBTRACT)

# scope_key for closings that cover every employee
ALL_EMPLOYEES_SCOPE = 0


def _money(value):
    return None if value is None else str(value)


class CashClosing(db.Model):
    """
    Immutable reconciliation snapshot for the window [start_at, end_at).

    WHY: A closing is a locked record of what the ledger said and what
    staff counted at the moment of closing. Corrections go to
    ClosingAdjustment rows; this row is never updated.

    PARTITION: Closings of one scope (one employee, or everyone) tile time
    without gaps or overlaps. The next open period starts at the latest
    end_at of the scope; (scope_key, start_at) is unique so two concurrent
    commits of the same open period cannot both land.
    """
    __tablename__ = "cash_closings"
    __table_args__ = (
        db.UniqueConstraint("scope_key", "start_at", name="uq_cash_closings_scope_start"),
        db.Index("ix_cash_closings_scope_end", "scope_key", "end_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # manual, daily, monthly, custom, shift
    period_type = db.Column(db.String(16), nullable=False, default=PERIOD_MANUAL)

    # NULL = all employees
    employee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    scope_key = db.Column(db.Integer, nullable=False, default=ALL_EMPLOYEES_SCOPE)

    start_at = db.Column(db.DateTime(timezone=True), nullable=False)
    end_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Expected (recomputed server-side at commit)
    expected_cash_amount = db.Column(db.Numeric(12, 2), nullable=False)
    expected_non_cash_amount = db.Column(db.Numeric(12, 2), nullable=False)
    expected_card_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    expected_transfer_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    expected_other_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    expected_total_amount = db.Column(db.Numeric(12, 2), nullable=False)

    # Cash breakdown behind expected_cash_amount
    cash_in_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    cash_refunds_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    pay_ins_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payouts_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_count = db.Column(db.Integer, nullable=False, default=0)
    refund_count = db.Column(db.Integer, nullable=False, default=0)

    # Declared (counted by staff)
    declared_cash_amount = db.Column(db.Numeric(12, 2), nullable=False)
    declared_non_cash_amount = db.Column(db.Numeric(12, 2), nullable=False)
    declared_total_amount = db.Column(db.Numeric(12, 2), nullable=False)

    # Declared - expected, never clamped
    difference_cash = db.Column(db.Numeric(12, 2), nullable=False)
    difference_non_cash = db.Column(db.Numeric(12, 2), nullable=False)
    difference_total = db.Column(db.Numeric(12, 2), nullable=False)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    employee = db.relationship("User", foreign_keys=[employee_id])
    creator = db.relationship("User", foreign_keys=[created_by])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "period_type": self.period_type,
            "employee_id": self.employee_id,
            "start_at": to_utc_z(self.start_at),
            "end_at": to_utc_z(self.end_at),
            "expected_cash_amount": _money(self.expected_cash_amount),
            "expected_non_cash_amount": _money(self.expected_non_cash_amount),
            "expected_card_amount": _money(self.expected_card_amount),
            "expected_transfer_amount": _money(self.expected_transfer_amount),
            "expected_other_amount": _money(self.expected_other_amount),
            "expected_total_amount": _money(self.expected_total_amount),
            "cash_in_total": _money(self.cash_in_total),
            "cash_refunds_total": _money(self.cash_refunds_total),
            "pay_ins_total": _money(self.pay_ins_total),
            "payouts_total": _money(self.payouts_total),
            "payment_count": self.payment_count,
            "refund_count": self.refund_count,
            "declared_cash_amount": _money(self.declared_cash_amount),
            "declared_non_cash_amount": _money(self.declared_non_cash_amount),
            "declared_total_amount": _money(self.declared_total_amount),
            "difference_cash": _money(self.difference_cash),
            "difference_non_cash": _money(self.difference_non_cash),
            "difference_total": _money(self.difference_total),
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class ClosingAdjustment(db.Model):
    """
    Post-commit correction attached to a closing.

    The closing row is never rewritten; final balance is
    declared_cash_amount + sum(ADD) - sum(SUBTRACT).
    """
    __tablename__ = "cash_closing_adjustments"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_closing_adjustments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    closing_id = db.Column(db.Integer, db.ForeignKey("cash_closings.id"), nullable=False, index=True)

    # ADD, SUBTRACT
    type = db.Column(db.String(16), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=False)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    closing = db.relationship(
        "CashClosing",
        backref=db.backref("adjustments", lazy=True, order_by="ClosingAdjustment.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "closing_id": self.closing_id,
            "type": self.type,
            "amount": _money(self.amount),
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(CashClosing, "before_update")
def _reject_closing_update(mapper, connection, target):
    # Backref collection changes mark the row dirty; only column edits count.
    state = inspect(target)
    for column_attr in mapper.column_attrs:
        if state.attrs[column_attr.key].history.has_changes():
            raise InvalidStateError(
                "Cash closing is a locked snapshot and cannot be modified",
                code="CLOSING_IMMUTABLE",
                closing_id=target.id,
            )
