# Overview: Request and permission decorators for API routes.

from functools import wraps
from flask import request, g

from .extensions import db
from .permissions import role_has_permission
from .responses import fail
from .services import session_service


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid bearer token.

    Sets g.current_user (the authenticated User) and g.token. Returns 401
    when the header is missing, the token is unknown, revoked or expired,
    or the user was deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return fail("Access denied. No token provided.", 401, code="AUTH_REQUIRED")

        user = session_service.validate_session(db.session, token)
        if user is None:
            return fail("Invalid or expired token", 401, code="AUTH_INVALID")

        g.current_user = user
        g.token = token
        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission_code: str):
    """Require the current user's role to hold ``permission_code``."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_auth was called first
            if not hasattr(g, "current_user"):
                return fail("Authentication required", 401, code="AUTH_REQUIRED")

            if not role_has_permission(g.current_user.role, permission_code):
                return fail(
                    "Access denied. Insufficient permissions.",
                    403,
                    code="PERMISSION_DENIED",
                    details={"required_permission": permission_code, "role": g.current_user.role},
                )

            return f(*args, **kwargs)

        return decorated_function
    return decorator
