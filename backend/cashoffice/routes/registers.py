# Overview: Flask API routes for registers and opening shifts on them; parses input and returns JSON responses.

# backend/cashoffice/routes/registers.py
"""
Register Management API Routes

WHY: Registers are the physical cash drawers. A shift can only be opened
on an active register and only one shift per register may be open.

DESIGN:
- Register setup and deactivation (admin/manager only)
- Shift open on a register (any authenticated user)
- Force-close of an abandoned shift (admin/manager only)

SECURITY:
- Manager role required for setup and force-close
- Shift conflicts return 409 with the blocking shift_id and register_id
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import shift_service
from ..errors import CashOfficeError, NotFoundError, error_response
from ..decorators import require_auth, require_manager


registers_bp = Blueprint("registers", __name__, url_prefix="/api/registers")


# =============================================================================
# REGISTER MANAGEMENT (Admin/Manager)
# =============================================================================

@registers_bp.post("/")
@registers_bp.post("")
@require_auth
@require_manager
def create_register_route():
    """
    Create a new register.

    Request body:
    {
        "register_number": "REG-01",
        "name": "Front Desk",
        "location": "Lobby"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}

        register = shift_service.create_register(
            register_number=data.get("register_number"),
            name=data.get("name"),
            location=data.get("location"),
        )

        return jsonify({"register": register.to_dict()}), 201

    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create register")
        return jsonify({"error": "Internal server error"}), 500


@registers_bp.get("/")
@registers_bp.get("")
@require_auth
def list_registers_route():
    """List registers with their current open shift. ?all=1 includes inactive ones."""
    try:
        include_inactive = request.args.get("all", "").lower() in ("1", "true", "yes")

        result = []
        for register in shift_service.list_registers(include_inactive=include_inactive):
            d = register.to_dict()
            current = shift_service.get_open_shift(register.id)
            d["current_shift"] = current.to_dict() if current else None
            result.append(d)

        return jsonify({"registers": result}), 200
    except Exception:
        current_app.logger.exception("Failed to list registers")
        return jsonify({"error": "Internal server error"}), 500


@registers_bp.get("/<int:register_id>")
@require_auth
def get_register_route(register_id: int):
    """Register details including the current shift (server is the source of truth)."""
    try:
        return jsonify(shift_service.get_register_status(register_id)), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load register")
        return jsonify({"error": "Internal server error"}), 500


@registers_bp.post("/<int:register_id>/deactivate")
@require_auth
@require_manager
def deactivate_register_route(register_id: int):
    try:
        register = shift_service.deactivate_register(register_id)
        return jsonify({"register": register.to_dict()}), 200
    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate register")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SHIFTS ON A REGISTER
# =============================================================================

@registers_bp.post("/<int:register_id>/shifts/open")
@require_auth
def open_shift_route(register_id: int):
    """
    Open a new shift on a register for the current user.

    Request body:
    {
        "opening_cash": "100.00"  // Float placed in the drawer
    }

    Returns 409 SHIFT_CONFLICT if the register already has an open shift.
    """
    try:
        data = request.get_json(silent=True) or {}

        shift = shift_service.open_shift(
            register_id=register_id,
            user_id=g.current_user.id,
            opening_cash=data.get("opening_cash", 0),
        )

        return jsonify({"shift": shift.to_dict()}), 201

    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open shift")
        return jsonify({"error": "Internal server error"}), 500


@registers_bp.post("/<int:register_id>/force-close")
@require_auth
@require_manager
def force_close_register_route(register_id: int):
    """
    Force-close the currently open shift on a register.

    Request body:
    {
        "closing_cash": "0.00",  // Cash counted in the abandoned drawer (required)
        "notes": "Cashier left without closing"  (optional)
    }
    """
    try:
        shift_service.get_register(register_id)
        open_shift = shift_service.get_open_shift(register_id)
        if not open_shift:
            raise NotFoundError("No open shift on this register", code="NO_OPEN_SHIFT", register_id=register_id)

        data = request.get_json(silent=True) or {}
        shift = shift_service.force_close_shift(
            open_shift.id,
            data.get("closing_cash"),
            g.current_user.id,
            notes=data.get("notes"),
        )

        return jsonify({"shift": shift.to_dict()}), 200

    except CashOfficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to force-close register")
        return jsonify({"error": "Internal server error"}), 500
