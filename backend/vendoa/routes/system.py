# Overview: Flask API routes for system health; reports database reachability.

"""
System health endpoint.

Used by load balancers and the frontend to detect a dead backend before a
cashier starts ringing up sales.
"""

import time
from flask import Blueprint, current_app

from ..extensions import db
from ..models import Product, SessionToken, User
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        user_count = db.session.query(User).count()
        active_sessions = db.session.query(SessionToken).filter_by(is_revoked=False).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "users": user_count,
                "active_sessions": active_sessions,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    database_health = check_database_health()
    healthy = database_health["status"] == "healthy"

    body = {
        "success": healthy,
        "data": {
            "status": database_health["status"],
            "timestamp": utcnow().isoformat() + "Z",
            "checks": {"database": database_health},
        },
    }
    return body, 200 if healthy else 503
