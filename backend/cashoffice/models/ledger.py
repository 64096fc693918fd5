from __future__ import annotations

from ..extensions import db
from cashoffice.time_utils import to_utc_z


METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_TRANSFER = "transfer"
METHOD_OTHER = "other"

VALID_METHODS = (METHOD_CASH, METHOD_CARD, METHOD_TRANSFER, METHOD_OTHER)

PAYMENT_COMPLETED = "completed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"

MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"

VALID_MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT)


class Payment(db.Model):
    """
    Completed subscription or POS payment.

    WRITTEN BY: the Payments component. The cash office only reads these
    rows; ``refunded_total`` grows as Refund rows are recorded against
    the payment.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_paid_at_operator", "paid_at", "operator_id"),
        db.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        db.CheckConstraint("refunded_total <= amount", name="ck_payments_refunded_le_amount"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)

    # cash, card, transfer, other
    method = db.Column(db.String(16), nullable=False, index=True)

    # completed, refunded, partially_refunded
    status = db.Column(db.String(24), nullable=False, default=PAYMENT_COMPLETED, index=True)
    refunded_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=True, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Receipt number, card auth code, subscription reference, ...
    reference = db.Column(db.String(128), nullable=True)

    shift = db.relationship("Shift", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "method": self.method,
            "status": self.status,
            "refunded_total": str(self.refunded_total),
            "paid_at": to_utc_z(self.paid_at),
            "shift_id": self.shift_id,
            "operator_id": self.operator_id,
            "reference": self.reference,
        }


class Refund(db.Model):
    """
    Reduction against a Payment. Never deletes the original payment.

    The refund is netted against the tender of the original payment and
    counted in the window containing ``refunded_at``.
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    # Shift whose drawer paid the refund out (if any)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=True, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    payment = db.relationship("Payment", backref=db.backref("refunds", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "amount": str(self.amount),
            "reason": self.reason,
            "refunded_at": to_utc_z(self.refunded_at),
            "shift_id": self.shift_id,
            "operator_id": self.operator_id,
        }


class CashMovement(db.Model):
    """
    Manual pay-in / pay-out of drawer cash unrelated to sales
    (petty cash, supplier payout, float top-up).
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_cash_movements_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # IN, OUT
    type = db.Column(db.String(8), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=True, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    shift = db.relationship("Shift", backref=db.backref("cash_movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "amount": str(self.amount),
            "reason": self.reason,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "shift_id": self.shift_id,
            "operator_id": self.operator_id,
        }
