# Overview: Flask API routes for products operations; parses input and returns JSON responses.

"""
Product catalog API routes.

Stock is only set here once, as the opening quantity when a product is
created. Later changes go through /api/stock or the sale and refund flows.
"""

from flask import Blueprint, request, g

from ..extensions import db
from ..errors import PosError
from ..models import Product
from ..services import products_service, stock_service
from ..decorators import require_auth, require_permission
from ..responses import ok, from_error, server_error
from ..validation import (
    ModelValidationPolicy,
    enforce_rules_product,
    flag_arg,
    pagination_args,
    validate_payload,
)


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


PRODUCT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "barcode", "name", "description", "price_cents", "cost_cents",
        "stock_quantity", "min_stock_level", "is_active",
    },
    required_on_create={"sku", "name", "price_cents"},
)

PRODUCT_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "barcode", "name", "description", "price_cents", "cost_cents",
        "min_stock_level", "is_active",
    },
)


@products_bp.get("")
@require_auth
@require_permission("VIEW_INVENTORY")
def list_products_route():
    """
    Active products ordered by name.

    Query params: search (name, sku or barcode), low_stock=true, page, page_size.
    """
    try:
        page, page_size = pagination_args(request.args)
        result = products_service.list_products(
            db.session,
            search=(request.args.get("search") or "").strip() or None,
            low_stock=flag_arg(request.args, "low_stock"),
            page=page,
            page_size=page_size,
        )
        return ok(result)
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to list products")


@products_bp.get("/alerts/low-stock")
@require_auth
@require_permission("VIEW_INVENTORY")
def low_stock_route():
    """Active products at or below their minimum stock level."""
    try:
        products = stock_service.low_stock_products(db.session)
        return ok([p.to_dict() for p in products])
    except Exception:
        return server_error("Failed to load low stock alerts")


@products_bp.get("/barcode/<string:barcode>")
@require_auth
@require_permission("VIEW_INVENTORY")
def get_by_barcode_route(barcode: str):
    """Scanner lookup; only active products match."""
    try:
        product = products_service.get_by_barcode(db.session, barcode)
        return ok(product.to_dict())
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to look up barcode")


@products_bp.get("/<int:product_id>")
@require_auth
@require_permission("VIEW_INVENTORY")
def get_product_route(product_id: int):
    try:
        product = stock_service.get_product(db.session, product_id)
        return ok(product.to_dict())
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to load product")


@products_bp.post("")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def create_product_route():
    """
    Create a product.

    Requires: MANAGE_PRODUCTS permission
    Available to: admin, manager

    Opening stock_quantity (optional) is recorded as an in/initial movement.
    """
    try:
        data = request.get_json(silent=True)
        patch = validate_payload(model=Product, payload=data, policy=PRODUCT_CREATE_POLICY, partial=False)
        enforce_rules_product(patch)

        product = products_service.create_product(db.session, patch, user_id=g.current_user.id)
        return ok(product.to_dict(), 201, message="Product created")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to create product")


@products_bp.put("/<int:product_id>")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def update_product_route(product_id: int):
    """
    Update catalog fields.

    Requires: MANAGE_PRODUCTS permission
    Available to: admin, manager

    stock_quantity in the body is ignored; use /api/stock instead.
    """
    try:
        data = request.get_json(silent=True) or {}
        if isinstance(data, dict):
            data.pop("stock_quantity", None)
        patch = validate_payload(model=Product, payload=data, policy=PRODUCT_UPDATE_POLICY, partial=True)
        enforce_rules_product(patch)

        product = products_service.update_product(db.session, product_id, patch)
        return ok(product.to_dict(), message="Product updated")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to update product")


@products_bp.delete("/<int:product_id>")
@require_auth
@require_permission("DEACTIVATE_PRODUCT")
def delete_product_route(product_id: int):
    """
    Soft delete: the product is deactivated, never removed.

    Requires: DEACTIVATE_PRODUCT permission
    Available to: admin
    """
    try:
        product = products_service.deactivate_product(db.session, product_id)
        return ok(product.to_dict(), message="Product deactivated")
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to deactivate product")
