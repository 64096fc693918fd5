# Overview: Append-only audit trail for shift, closing and cash movement actions.

from __future__ import annotations

import json
from typing import Any, Optional
from datetime import datetime

from ..extensions import db
from ..models import AuditEvent


def append_audit_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    register_id: int | None = None,
    shift_id: int | None = None,
    closing_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
) -> AuditEvent:
    """
    Append an audit event to the current transaction.

    - No domain logic here.
    - Flushes but never commits: the caller's commit makes the event and
      the audited change durable together.
    """
    ev = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        register_id=register_id,
        shift_id=shift_id,
        closing_id=closing_id,
        occurred_at=occurred_at,  # if None, db default applies
        note=note,
        payload=json.dumps(payload, default=str, sort_keys=True) if payload is not None else None,
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_audit_events(
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    event_type: str | None = None,
) -> list[AuditEvent]:
    query = db.session.query(AuditEvent)
    if entity_type:
        query = query.filter_by(entity_type=entity_type)
    if entity_id is not None:
        query = query.filter_by(entity_id=entity_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    return query.order_by(AuditEvent.id).all()
