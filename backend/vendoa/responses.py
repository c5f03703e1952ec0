# Overview: Uniform JSON envelope for every API response.

from flask import current_app, jsonify

from .errors import PosError


def ok(data=None, status: int = 200, message: str | None = None):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return jsonify(body), status


def fail(error: str, status: int = 400, code: str | None = None, details: dict | None = None):
    body = {"success": False, "error": error}
    if code:
        body["code"] = code
    if details:
        body["details"] = details
    return jsonify(body), status


def from_error(exc: PosError):
    body = {"success": False, **exc.to_dict()}
    return jsonify(body), exc.status_code


def server_error(log_message: str, public_message: str = "Internal server error"):
    current_app.logger.exception(log_message)
    return fail(public_message, 500, code="INTERNAL_ERROR")
