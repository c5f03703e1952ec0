# Overview: Flask API routes for stock control; parses input and returns JSON responses.

"""
Stock control API routes.

Receiving and adjustments are the only ways stock changes outside of
sales and refunds. Every change comes back with the movement it wrote.
"""

from flask import Blueprint, request, g

from ..extensions import db
from ..errors import PosError, ValidationError
from ..models.catalog import MOVEMENT_TYPES
from ..services import stock_service
from ..decorators import require_auth, require_permission
from ..responses import ok, from_error, server_error
from ..validation import coerce_int, date_range_args, optional_str, pagination_args, require_fields


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.get("/movements")
@require_auth
@require_permission("VIEW_INVENTORY")
def list_movements_route():
    """
    Stock movement history, newest first.

    Query params: product_id, type (in/out/adjustment), start_date, end_date, page, page_size.
    """
    try:
        product_id = request.args.get("product_id")
        if product_id is not None:
            product_id = coerce_int(product_id, "product_id")

        movement_type = request.args.get("type")
        if movement_type and movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Invalid movement type: {movement_type}", "INVALID_FIELD",
                                  {"allowed": list(MOVEMENT_TYPES)})

        start, end = date_range_args(request.args)
        page, page_size = pagination_args(request.args)

        result = stock_service.list_movements(
            db.session,
            product_id=product_id,
            type=movement_type,
            start=start,
            end=end,
            page=page,
            page_size=page_size,
        )
        return ok(result)
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to list stock movements")


@stock_bp.post("/receive")
@require_auth
@require_permission("RECEIVE_STOCK")
def receive_stock_route():
    """
    Receive purchased stock.

    Requires: RECEIVE_STOCK permission
    Available to: admin, manager

    Request body: {"product_id": 1, "quantity": 24, "notes": "PO 118"}
    """
    try:
        data = request.get_json(silent=True) or {}
        require_fields(data, "product_id", "quantity")

        product, movement = stock_service.receive(
            db.session,
            coerce_int(data["product_id"], "product_id"),
            data["quantity"],
            user_id=g.current_user.id,
            notes=optional_str(data, "notes"),
        )
        return ok({"product": product.to_dict(), "movement": movement.to_dict()}, message="Stock received")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to receive stock")


@stock_bp.post("/adjust")
@require_auth
@require_permission("ADJUST_STOCK")
def adjust_stock_route():
    """
    Correct on-hand stock by a signed quantity.

    Requires: ADJUST_STOCK permission
    Available to: admin, manager

    Request body: {"product_id": 1, "quantity": -2, "reason": "damaged", "notes": "..."}
    """
    try:
        data = request.get_json(silent=True) or {}
        require_fields(data, "product_id", "quantity", "reason")

        product, movement = stock_service.adjust(
            db.session,
            coerce_int(data["product_id"], "product_id"),
            data["quantity"],
            data["reason"],
            user_id=g.current_user.id,
            notes=optional_str(data, "notes"),
        )
        return ok({"product": product.to_dict(), "movement": movement.to_dict()}, message="Stock adjusted")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to adjust stock")
