# Overview: Error taxonomy shared by services and routes.

"""
Cash office error types.

Every error carries a machine-readable ``code`` and optional structured
``details`` so callers can drive recovery from data instead of parsing
messages. Routes turn them into JSON bodies via ``to_dict()`` and use
``http_status`` as the response status.

Financial discrepancies are never errors: a shortage or overage is
reported as a variance field on the shift or closing.
"""

from __future__ import annotations

from typing import Any

from flask import jsonify


class CashOfficeError(Exception):
    """Base class for all domain errors."""

    code = "CASH_OFFICE_ERROR"
    http_status = 500

    def __init__(self, message: str, *, code: str | None = None, **details: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(CashOfficeError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"
    http_status = 400


class PermissionDeniedError(CashOfficeError):
    """403-level: the caller may not act on this resource."""

    code = "PERMISSION_DENIED"
    http_status = 403


class NotFoundError(CashOfficeError):
    """404-level: referenced register, shift or closing does not exist."""

    code = "NOT_FOUND"
    http_status = 404


class ConflictError(CashOfficeError):
    """
    409-level business rule conflict.

    A shift conflict carries ``shift_id`` and ``register_id`` of the
    blocking shift so the operator can force-close it.
    """

    code = "CONFLICT"
    http_status = 409


class InvalidStateError(CashOfficeError):
    """409-level: operation not legal in the record's current state."""

    code = "INVALID_STATE"
    http_status = 409


class StorageError(CashOfficeError):
    """Underlying persistence failure. Always surfaced, never swallowed."""

    code = "STORAGE_ERROR"
    http_status = 503


def error_response(error: CashOfficeError):
    """(json body, status) pair for a route to return."""
    return jsonify(error.to_dict()), error.http_status
