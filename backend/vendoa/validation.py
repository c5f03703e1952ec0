from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .time_utils import parse_iso_datetime


# Maximum price: $9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999
MAX_PAGE_SIZE = 200
MAX_PAGE = 1_000_000

# Upper bounds for quantities and money amounts taken from clients.
# Sums of capped values stay far below the 64-bit column range.
MAX_QUANTITY = 1_000_000
MAX_AMOUNT_CENTS = 99_999_999_999
# Largest value a 64-bit INTEGER column (row ids) can hold
MAX_DB_INTEGER = 2**63 - 1


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _in_db_range(value: int, field: str) -> int:
    if abs(value) > MAX_DB_INTEGER:
        raise ValidationError(f"{field} is out of range", "INVALID_FIELD", {"field": field})
    return value


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON input.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals and
    scientific notation so money and quantities never pass through floats.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return _in_db_range(value, field)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer", "INVALID_FIELD", {"field": field})
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)",
                                  "INVALID_FIELD", {"field": field})
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", "INVALID_FIELD", {"field": field})
        try:
            parsed = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", "INVALID_FIELD", {"field": field})
        return _in_db_range(parsed, field)
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", "INVALID_FIELD", {"field": field})
    raise ValidationError(f"{field} must be an integer", "INVALID_FIELD", {"field": field})


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean", "INVALID_FIELD", {"field": col.key})

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload", "INVALID_PAYLOAD")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", "MISSING_FIELDS",
                                  {"fields": missing})

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields or k not in cols:
            raise ValidationError(f"Field not allowed: {k}", "INVALID_FIELD", {"field": k})

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", "INVALID_FIELD", {"field": k})
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank", "INVALID_FIELD", {"field": k})

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}", "INVALID_FIELD", {"field": k})

        # Empty optional strings are stored as NULL (keeps barcode uniqueness sane)
        if isinstance(val, str) and val == "" and col.nullable:
            val = None

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict) -> None:
    for key in ("price_cents", "cost_cents"):
        if key in patch:
            value = patch[key]
            if value < 0:
                raise ValidationError(f"{key} must be >= 0", "INVALID_FIELD", {"field": key})
            if value > MAX_PRICE_CENTS:
                raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}", "INVALID_FIELD", {"field": key})
    for key in ("stock_quantity", "min_stock_level"):
        if key in patch:
            if patch[key] < 0:
                raise ValidationError(f"{key} must be >= 0", "INVALID_FIELD", {"field": key})
            if patch[key] > MAX_QUANTITY:
                raise ValidationError(f"{key} cannot exceed {MAX_QUANTITY}", "INVALID_FIELD", {"field": key})


def enforce_rules_customer(patch: dict) -> None:
    if "credit_limit_cents" in patch and patch["credit_limit_cents"] < 0:
        raise ValidationError("credit_limit_cents must be >= 0 (0 = unlimited)", "INVALID_FIELD",
                              {"field": "credit_limit_cents"})
    if patch.get("credit_limit_cents", 0) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"credit_limit_cents cannot exceed {MAX_AMOUNT_CENTS}", "INVALID_FIELD",
                              {"field": "credit_limit_cents"})


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", "MISSING_FIELDS",
                              {"fields": missing})


def optional_str(payload: dict, field: str, max_length: int = 255) -> str | None:
    value = payload.get(field)
    if value is None:
        return None
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", "INVALID_FIELD", {"field": field})
    return value or None


def pagination_args(args) -> tuple[int, int]:
    page = coerce_int(args.get("page", "1"), "page")
    page_size = coerce_int(args.get("page_size", "50"), "page_size")
    if page < 1 or page > MAX_PAGE:
        raise ValidationError(f"page must be between 1 and {MAX_PAGE}", "INVALID_FIELD", {"field": "page"})
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}", "INVALID_FIELD",
                              {"field": "page_size"})
    return page, page_size


def date_range_args(args):
    """Inclusive (start, end) from start_date/end_date query params; both or neither."""
    try:
        start = parse_iso_datetime(args.get("start_date"))
        end = parse_iso_datetime(args.get("end_date"))
    except ValueError:
        raise ValidationError("start_date and end_date must be ISO-8601 datetimes", "INVALID_FIELD")
    if (start is None) != (end is None):
        raise ValidationError("start_date and end_date must be given together", "INVALID_FIELD")
    return start, end


def flag_arg(args, name: str) -> bool:
    return str(args.get(name, "")).lower() in ("1", "true", "yes")
