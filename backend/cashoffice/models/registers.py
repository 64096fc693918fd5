from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from cashoffice.time_utils import to_utc_z


SHIFT_STATUS_OPEN = "OPEN"
SHIFT_STATUS_CLOSED = "CLOSED"

ACTIVITY_NORMAL = "NORMAL"
ACTIVITY_NONE = "NO_ACTIVITY"


def _money(value):
    return None if value is None else str(value)


class Register(db.Model):
    """
    Physical POS register/terminal (front desk, shop counter, ...).

    WHY: Cash accountability is per drawer. Each register has its own
    cash drawer and shift history.

    DESIGN: Registers are persistent (not deleted when inactive).
    Each register can have many shifts over time but at most one OPEN.
    """
    __tablename__ = "registers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable identifier (e.g., "REG-01", "FRONT-DESK")
    register_number = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(128), nullable=False)  # Display name
    location = db.Column(db.String(128), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "register_number": self.register_number,
            "name": self.name,
            "location": self.location,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Shift(db.Model):
    """
    One cash-drawer custody session on a register.

    LIFECYCLE:
    - OPEN: custody active, payments and pay-ins/outs may reference it
    - CLOSED: cash counted, expected cash and difference frozen

    IMMUTABLE: Once closed, a shift is never reopened or deleted.

    The partial unique indexes below are the authority for "one open shift
    per register" and "one open shift per user"; the service-level
    pre-checks only produce a nicer error.
    """
    __tablename__ = "shifts"
    __table_args__ = (
        db.Index(
            "uq_shifts_one_open_per_register",
            "register_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
        db.Index(
            "uq_shifts_one_open_per_user",
            "opened_by_user_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
        db.Index("ix_shifts_register_opened", "register_id", "opened_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    register_id = db.Column(db.Integer, db.ForeignKey("registers.id"), nullable=False, index=True)
    opened_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    closed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SHIFT_STATUS_OPEN, index=True)  # OPEN, CLOSED

    opening_cash = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    closing_cash = db.Column(db.Numeric(12, 2), nullable=True)  # Set when closing

    # Frozen at close: opening float + net cash of the shift's ledger rows
    expected_cash = db.Column(db.Numeric(12, 2), nullable=True)
    cash_difference = db.Column(db.Numeric(12, 2), nullable=True)  # closing - expected

    activity_type = db.Column(db.String(16), nullable=False, default=ACTIVITY_NORMAL)
    force_closed = db.Column(db.Boolean, nullable=False, default=False)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    register = db.relationship("Register", backref=db.backref("shifts", lazy=True))
    opened_by = db.relationship("User", foreign_keys=[opened_by_user_id], backref=db.backref("shifts_opened", lazy=True))
    closed_by = db.relationship("User", foreign_keys=[closed_by_user_id], backref=db.backref("shifts_closed", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == SHIFT_STATUS_OPEN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "register_id": self.register_id,
            "opened_by_user_id": self.opened_by_user_id,
            "closed_by_user_id": self.closed_by_user_id,
            "status": self.status,
            "opening_cash": _money(self.opening_cash),
            "closing_cash": _money(self.closing_cash),
            "expected_cash": _money(self.expected_cash),
            "cash_difference": _money(self.cash_difference),
            "activity_type": self.activity_type,
            "force_closed": self.force_closed,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "notes": self.notes,
            "version_id": self.version_id,
        }
