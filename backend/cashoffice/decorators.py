# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service
from .models.auth import ROLE_ADMIN, ROLE_MANAGER


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def require_auth(f):
    """
    Require a bearer session token.

    Sets g.current_user to the authenticated User.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required", "code": "UNAUTHENTICATED"}), 401

        token = auth_header.split(" ", 1)[1]

        user = session_service.validate_session(token)
        if not user:
            return jsonify({"error": "Invalid or expired token", "code": "UNAUTHENTICATED"}), 401

        g.current_user = user

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require the caller to hold one of ``roles``. Use after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required", "code": "UNAUTHENTICATED"}), 401

            if g.current_user.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "code": "PERMISSION_DENIED",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


require_manager = require_role(ROLE_ADMIN, ROLE_MANAGER)
require_admin = require_role(ROLE_ADMIN)
