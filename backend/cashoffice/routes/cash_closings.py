# Overview: Flask API routes for cash closings; parses input and returns JSON responses.

"""
Cash Closing API Routes

WHY: End-of-period reconciliation. Staff count the drawer, the server
computes what should be there, and the comparison is stored as an
immutable snapshot.

SECURITY:
- Staff only ever see and close their own scope (employee_id forced to self)
- Managers/admins may preview and close any scope, including all employees
- The monthly per-employee summary is manager only
- Listing, detail, adjustments and export are admin only
"""

from flask import Blueprint, Response, request, jsonify, g, current_app

from ..services import closing_service
from ..errors import CashOfficeError, PermissionDeniedError, ValidationError, error_response
from ..decorators import require_auth, require_admin, require_manager
from ..models.closings import PERIOD_MANUAL
from cashoffice.time_utils import parse_iso_datetime


cash_closings_bp = Blueprint("cash_closings", __name__, url_prefix="/api/cash-closings")


def _parse_dt(value, field: str):
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field)


def _scope_employee_id(requested) -> int | None:
    """
    Resolve the employee scope for the caller.

    Staff are always scoped to themselves; asking for someone else is 403.
    """
    user = g.current_user
    if requested in (None, ""):
        requested = None
    else:
        try:
            requested = int(requested)
        except (TypeError, ValueError):
            raise ValidationError("employee_id must be an integer", field="employee_id")

    if user.is_manager:
        return requested
    if requested is not None and requested != user.id:
        raise PermissionDeniedError("Staff can only access their own cash closings", employee_id=requested)
    return user.id


@cash_closings_bp.get("/current-period")
@require_auth
def current_period_route():
    """
    Preview of the caller's open period. Persists nothing.

    Query params: employee_id (managers only), declared_cash_amount,
    declared_non_cash_amount
    """
    try:
        employee_id = _scope_employee_id(request.args.get("employee_id"))
        preview = closing_service.preview_closing(
            employee_id,
            declared_cash=request.args.get("declared_cash_amount"),
            declared_non_cash=request.args.get("declared_non_cash_amount"),
        )
        return jsonify(preview), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to preview cash closing")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.get("/calculate-expected")
@require_auth
def calculate_expected_route():
    """Expected figures for an arbitrary window: ?start_at=...&end_at=...[&employee_id=]"""
    try:
        employee_id = _scope_employee_id(request.args.get("employee_id"))
        start_at = _parse_dt(request.args.get("start_at"), "start_at")
        end_at = _parse_dt(request.args.get("end_at"), "end_at")
        if start_at is None or end_at is None:
            raise ValidationError("start_at and end_at are required")

        amounts = closing_service.calculate_expected_for_window(start_at, end_at, employee_id)
        return jsonify({"expected": amounts.to_dict(), "employee_id": employee_id}), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to calculate expected amounts")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.get("/monthly-summary")
@require_auth
@require_manager
def monthly_summary_route():
    """Per-employee totals for a month: ?month=YYYY-MM"""
    try:
        return jsonify(closing_service.monthly_summary(request.args.get("month"))), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build monthly summary")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.get("/employee-payments")
@require_auth
def employee_payments_route():
    """
    An employee's payments in a window.

    Query params: employee_id (staff: self only), start_at, end_at
    """
    try:
        employee_id = _scope_employee_id(request.args.get("employee_id"))
        start_at = _parse_dt(request.args.get("start_at"), "start_at")
        end_at = _parse_dt(request.args.get("end_at"), "end_at")
        if start_at is None or end_at is None:
            raise ValidationError("start_at and end_at are required")

        return jsonify(closing_service.employee_payments(employee_id, start_at, end_at)), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list employee payments")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.post("/")
@cash_closings_bp.post("")
@require_auth
def create_closing_route():
    """
    Commit the open period.

    Request body:
    {
        "period_type": "daily",
        "declared_cash_amount": "300.00",
        "declared_non_cash_amount": "120.00",
        "end_at": "2026-03-01T18:00:00Z",  (optional, defaults to now)
        "start_at": "...",                  (optional, must match the open period)
        "employee_id": 7,                   (optional; staff: self only)
        "notes": "..."                      (optional)
    }

    Expected amounts are always recomputed server-side.
    """
    try:
        data = request.get_json(silent=True) or {}
        employee_id = _scope_employee_id(data.get("employee_id"))

        closing = closing_service.create_closing(
            data.get("period_type") or PERIOD_MANUAL,
            data.get("declared_cash_amount"),
            data.get("declared_non_cash_amount"),
            created_by=g.current_user.id,
            end_at=_parse_dt(data.get("end_at"), "end_at"),
            start_at=_parse_dt(data.get("start_at"), "start_at"),
            notes=data.get("notes"),
            employee_id=employee_id,
        )

        return jsonify({"closing": closing_service.closing_detail(closing)}), 201

    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create cash closing")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.get("/")
@cash_closings_bp.get("")
@require_auth
@require_admin
def list_closings_route():
    """
    Query params: employee_id, period_type, status (balanced/overage/shortage),
    start_date, end_date (on created_at), page, limit
    """
    try:
        result = closing_service.list_closings(
            employee_id=request.args.get("employee_id", type=int),
            period_type=request.args.get("period_type"),
            status=request.args.get("status"),
            created_from=_parse_dt(request.args.get("start_date"), "start_date"),
            created_to=_parse_dt(request.args.get("end_date"), "end_date"),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 20, type=int),
        )
        return jsonify(result), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list cash closings")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.get("/<int:closing_id>")
@require_auth
@require_admin
def get_closing_route(closing_id: int):
    try:
        closing = closing_service.get_closing(closing_id)
        return jsonify({"closing": closing_service.closing_detail(closing)}), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load cash closing")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.post("/<int:closing_id>/adjustments")
@require_auth
@require_admin
def add_adjustment_route(closing_id: int):
    """
    Request body:
    {
        "type": "ADD" | "SUBTRACT",
        "amount": "5.00",
        "reason": "Found in safe"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        adjustment = closing_service.add_adjustment(
            closing_id,
            data.get("type"),
            data.get("amount"),
            data.get("reason"),
            created_by=g.current_user.id,
        )
        closing = closing_service.get_closing(closing_id)
        return jsonify({
            "adjustment": adjustment.to_dict(),
            "closing": closing_service.closing_detail(closing),
        }), 201
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add closing adjustment")
        return jsonify({"error": "Internal server error"}), 500


@cash_closings_bp.get("/<int:closing_id>/export")
@require_auth
@require_admin
def export_closing_route(closing_id: int):
    """?format=json|csv|xlsx"""
    try:
        fmt = (request.args.get("format") or "json").lower()
        exported = closing_service.export_closing(closing_id, fmt)

        if fmt == "csv":
            return Response(
                exported,
                mimetype="text/csv",
                headers={"Content-Disposition": f"attachment; filename=cash_closing_{closing_id}.csv"},
            )
        if fmt == "xlsx":
            return Response(
                exported,
                mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                headers={"Content-Disposition": f"attachment; filename=cash_closing_{closing_id}.xlsx"},
            )
        return jsonify(exported), 200

    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to export cash closing")
        return jsonify({"error": "Internal server error"}), 500
