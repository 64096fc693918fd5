# Overview: Flask API routes for shift inspection and close; parses input and returns JSON responses.

"""
Shift API Routes

Closing a shift freezes expected cash, counted cash and the difference.
The opener closes their own shift; managers may close any shift and use
force-close for abandoned ones.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import shift_service
from ..errors import CashOfficeError, PermissionDeniedError, error_response
from ..decorators import require_auth, require_manager


shifts_bp = Blueprint("shifts", __name__, url_prefix="/api/shifts")


@shifts_bp.get("/")
@shifts_bp.get("")
@require_auth
@require_manager
def list_shifts_route():
    """
    List recent shifts.

    Query params: register_id, status (OPEN/CLOSED), closed_by, limit
    """
    try:
        limit = min(request.args.get("limit", 50, type=int), 500)
        shifts = shift_service.list_shifts(
            register_id=request.args.get("register_id", type=int),
            status=request.args.get("status"),
            closed_by_user_id=request.args.get("closed_by", type=int),
            limit=limit,
        )
        return jsonify({"shifts": [s.to_dict() for s in shifts], "count": len(shifts)}), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list shifts")
        return jsonify({"error": "Internal server error"}), 500


@shifts_bp.get("/<int:shift_id>")
@require_auth
def get_shift_route(shift_id: int):
    try:
        return jsonify({"shift": shift_service.get_shift(shift_id).to_dict()}), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load shift")
        return jsonify({"error": "Internal server error"}), 500


@shifts_bp.get("/<int:shift_id>/summary")
@require_auth
def shift_summary_route(shift_id: int):
    """Live totals: opening float, ledger totals and expected drawer cash."""
    try:
        return jsonify(shift_service.get_shift_summary(shift_id)), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build shift summary")
        return jsonify({"error": "Internal server error"}), 500


@shifts_bp.post("/<int:shift_id>/close")
@require_auth
def close_shift_route(shift_id: int):
    """
    Close a shift and calculate cash variance.

    Request body:
    {
        "closing_cash": "300.00",  // Actual cash counted
        "notes": "..."  (optional)
    }

    Shift becomes immutable after closing.
    """
    try:
        data = request.get_json(silent=True) or {}

        shift = shift_service.get_shift(shift_id)
        user = g.current_user
        if shift.opened_by_user_id != user.id and not user.is_manager:
            raise PermissionDeniedError(
                "Only the user who opened the shift (or a manager) can close it",
                shift_id=shift_id,
            )

        shift = shift_service.close_shift(
            shift_id,
            data.get("closing_cash"),
            user_id=user.id,
            notes=data.get("notes"),
        )

        return jsonify({"shift": shift.to_dict()}), 200

    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to close shift")
        return jsonify({"error": "Internal server error"}), 500


@shifts_bp.post("/<int:shift_id>/force-close")
@require_auth
@require_manager
def force_close_shift_route(shift_id: int):
    """Close an abandoned shift. closing_cash (the counted drawer) is required."""
    try:
        data = request.get_json(silent=True) or {}
        shift = shift_service.force_close_shift(
            shift_id,
            data.get("closing_cash"),
            g.current_user.id,
            notes=data.get("notes"),
        )

        return jsonify({"shift": shift.to_dict()}), 200

    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to force-close shift")
        return jsonify({"error": "Internal server error"}), 500
