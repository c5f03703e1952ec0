# Overview: Domain error taxonomy shared by services and routes.

"""
Every failure a core operation reports is a PosError carrying:

- kind: VALIDATION, NOT_FOUND, CONFLICT, STATE_INVARIANT or INFRASTRUCTURE
- code: stable machine-readable reason (e.g. INSUFFICIENT_STOCK)
- details: extra context so the caller can react without a second round
  trip (available quantity, current balance, ...)

Routes render these as the standard error envelope using status_code.
"""

from __future__ import annotations


class PosError(Exception):
    """Base class for domain errors."""
    kind = "INTERNAL"
    status_code = 500

    def __init__(self, message: str, code: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "kind": self.kind,
            "details": self.details,
        }


class ValidationError(PosError):
    """Missing or malformed input, rejected before any mutation."""
    kind = "VALIDATION"
    status_code = 400


class NotFoundError(PosError):
    kind = "NOT_FOUND"
    status_code = 404


class ConflictError(PosError):
    """Business rule conflict (stock, credit limit, refund state)."""
    kind = "CONFLICT"
    status_code = 409


class InvariantError(PosError):
    """The operation would leave stock or a balance negative."""
    kind = "STATE_INVARIANT"
    status_code = 422


class StorageError(PosError):
    kind = "INFRASTRUCTURE"
    status_code = 503

    def __init__(self, message: str = "Storage transaction failed", code: str = "STORAGE_FAILURE",
                 details: dict | None = None):
        super().__init__(message, code, details)
