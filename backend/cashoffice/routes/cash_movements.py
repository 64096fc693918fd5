# Overview: Flask API routes for cash pay-ins and payouts; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import cash_movement_service
from ..errors import CashOfficeError, ValidationError, error_response
from ..decorators import require_auth
from cashoffice.time_utils import parse_iso_datetime


cash_movements_bp = Blueprint("cash_movements", __name__, url_prefix="/api/cash-movements")


@cash_movements_bp.post("/")
@cash_movements_bp.post("")
@require_auth
def record_movement_route():
    """
    Record a pay-in (IN) or payout (OUT) on the caller's open shift.

    Request body:
    {
        "type": "OUT",
        "amount": "20.00",
        "reason": "Cleaning supplies",
        "notes": "..."  (optional)
    }

    Returns 409 NO_OPEN_SHIFT when the caller has no open shift.
    """
    try:
        data = request.get_json(silent=True) or {}
        movement = cash_movement_service.record_movement(
            g.current_user.id,
            data.get("type"),
            data.get("amount"),
            data.get("reason"),
            notes=data.get("notes"),
        )
        return jsonify({"movement": movement.to_dict()}), 201
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record cash movement")
        return jsonify({"error": "Internal server error"}), 500


@cash_movements_bp.get("/")
@cash_movements_bp.get("")
@require_auth
def list_movements_route():
    """Staff see their own movements; managers may filter by operator_id."""
    try:
        user = g.current_user
        operator_id = request.args.get("operator_id", type=int) if user.is_manager else user.id

        try:
            start_at = parse_iso_datetime(request.args.get("start_at"))
            end_at = parse_iso_datetime(request.args.get("end_at"))
        except (TypeError, ValueError):
            raise ValidationError("start_at and end_at must be ISO-8601 datetimes")

        result = cash_movement_service.list_movements(
            operator_id=operator_id,
            shift_id=request.args.get("shift_id", type=int),
            type=request.args.get("type"),
            start_at=start_at,
            end_at=end_at,
            limit=min(request.args.get("limit", 100, type=int), 500),
        )
        return jsonify(result), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list cash movements")
        return jsonify({"error": "Internal server error"}), 500
