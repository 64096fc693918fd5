# Overview: Service-layer helpers for row locking, optimistic-lock retries and storage failures.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import StorageError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The final failure is surfaced as
    StorageError.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise StorageError(f"Storage operation failed after {attempts} attempts: {exc}") from exc
            time.sleep(backoff_base * (2 ** attempt))


@contextmanager
def storage_guard(action: str):
    """
    Translate unexpected SQLAlchemy failures into StorageError.

    Rolls back the session so no half-written transition survives.
    Callers translate the errors they expect (IntegrityError on unique
    constraints) before this guard sees them.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError(f"Failed to {action}: {exc.__class__.__name__}") from exc
