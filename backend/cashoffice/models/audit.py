from __future__ import annotations

from ..extensions import db
from cashoffice.time_utils import to_utc_z


class AuditEvent(db.Model):
    """
    Append-only audit trail for cash office actions.

    INVARIANTS:
    - No deletes/updates of existing events.
    - Written inside the same DB transaction as the action it records.
    - occurred_at is business time; created_at is system time.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # e.g. shift.opened, shift.force_closed, cash_closing.created
    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    register_id = db.Column(db.Integer, db.ForeignKey("registers.id"), nullable=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id"), nullable=True)
    closing_id = db.Column(db.Integer, db.ForeignKey("cash_closings.id"), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    note = db.Column(db.Text, nullable=True)
    payload = db.Column(db.Text, nullable=True)  # JSON

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_user_id": self.actor_user_id,
            "register_id": self.register_id,
            "shift_id": self.shift_id,
            "closing_id": self.closing_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
            "payload": self.payload,
        }
