# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

"""Sales API routes with permission enforcement"""

from flask import Blueprint, request, g

from ..extensions import db
from ..errors import PosError
from ..services import sales_service, refund_service
from ..decorators import require_auth, require_permission
from ..responses import ok, from_error, server_error
from ..validation import coerce_int, date_range_args, optional_str, pagination_args


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.get("")
@require_auth
@require_permission("VIEW_SALES")
def list_sales_route():
    """
    List sales, newest first.

    Query params: start_date, end_date (ISO-8601, both or neither), page, page_size.
    """
    try:
        start, end = date_range_args(request.args)
        page, page_size = pagination_args(request.args)
        result = sales_service.list_sales(db.session, start=start, end=end, page=page, page_size=page_size)
        return ok(result)
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to list sales")


@sales_bp.get("/<int:sale_id>")
@require_auth
@require_permission("VIEW_SALES")
def get_sale_route(sale_id: int):
    """Sale with items, cashier and customer."""
    try:
        sale = sales_service.get_sale(db.session, sale_id)
        return ok(sale.to_dict(include_items=True))
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to load sale")


@sales_bp.post("")
@require_auth
@require_permission("CREATE_SALE")
def create_sale_route():
    """
    Checkout: create a completed sale.

    Requires: CREATE_SALE permission
    Available to: admin, manager, cashier

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2, "discount_cents": 0}],
        "payment_method": "cash",
        "amount_paid_cents": 1000,    // required unless payment_method is credit
        "discount_cents": 0,          // optional, sale-level
        "customer_id": 3,             // required for credit
        "notes": "..."
    }
    """
    try:
        data = request.get_json(silent=True) or {}

        customer_id = data.get("customer_id")
        if customer_id is not None:
            customer_id = coerce_int(customer_id, "customer_id")

        sale = sales_service.checkout(
            db.session,
            user_id=g.current_user.id,
            items=data.get("items"),
            payment_method=data.get("payment_method"),
            amount_paid_cents=data.get("amount_paid_cents"),
            discount_cents=data.get("discount_cents", 0),
            customer_id=customer_id,
            notes=optional_str(data, "notes"),
        )
        return ok(sale.to_dict(include_items=True), 201, message="Sale completed")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to create sale")


@sales_bp.post("/<int:sale_id>/refund")
@require_auth
@require_permission("REFUND_SALE")
def refund_sale_route(sale_id: int):
    """
    Refund a sale, fully or by item.

    Requires: REFUND_SALE permission
    Available to: admin, manager, cashier

    Request body (optional):
    {
        "item_ids": [12, 13]    // omit to refund every remaining item
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = refund_service.refund(
            db.session,
            sale_id,
            user_id=g.current_user.id,
            item_ids=data.get("item_ids"),
        )
        return ok(sale.to_dict(include_items=True), message="Refund processed")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to refund sale")
