# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API routes

Bearer tokens are minted at login and revoked at logout. Users are created
through the CLI (flask users create); there is no self-registration.
"""

from flask import Blueprint, request, current_app, g

from ..extensions import db
from ..services import auth_service
from ..services import session_service
from ..permissions import ROLE_PERMISSIONS
from ..decorators import require_auth
from ..responses import ok, fail, server_error
from ..time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _user_payload(user) -> dict:
    return {
        "user": user.to_dict(),
        "permissions": sorted(ROLE_PERMISSIONS.get(user.role, set())),
    }


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included in Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username")
        password = data.get("password")

        if not username or not password:
            return fail("username and password required", 400, code="MISSING_FIELDS")

        user = auth_service.authenticate(db.session, username, password)
        if user is None:
            current_app.logger.warning("Failed login for %r from %s", username, request.remote_addr)
            return fail("Invalid credentials", 401, code="AUTH_INVALID")

        record, token = session_service.create_session(
            db.session,
            user.id,
            ttl_hours=current_app.config["SESSION_TTL_HOURS"],
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        payload = _user_payload(user)
        payload["token"] = token
        payload["expires_at"] = to_utc_z(record.expires_at)
        return ok(payload, message="Login successful")

    except Exception:
        return server_error("Failed to login user")


@auth_bp.post("/logout")
@require_auth
def logout_route():
    """
    Revoke the session token used for this request.

    WHY: Explicit logout prevents token reuse.
    """
    try:
        session_service.revoke_session(db.session, g.token)
        return ok(message="Logout successful")
    except Exception:
        return server_error("Failed to logout user")


@auth_bp.get("/me")
@require_auth
def me_route():
    """Current user and the permission codes of their role."""
    return ok(_user_payload(g.current_user))
