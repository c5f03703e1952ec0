# Overview: Flask API routes for customers and their credit accounts.

"""
Customer API routes.

Credit balances are read-only through the customer endpoints. They change
only through credit sales, pay-credit and adjust-credit, each of which
appends a CreditTransaction.
"""

from flask import Blueprint, request, g

from ..extensions import db
from ..errors import PosError
from ..models import Customer
from ..services import credit_service, customer_service
from ..decorators import require_auth, require_permission
from ..responses import ok, from_error, server_error
from ..validation import (
    ModelValidationPolicy,
    enforce_rules_customer,
    flag_arg,
    optional_str,
    pagination_args,
    require_fields,
    validate_payload,
)


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={"name", "email", "phone", "address", "credit_limit_cents", "is_active"},
    required_on_create={"name"},
)


@customers_bp.get("")
@require_auth
@require_permission("VIEW_CUSTOMERS")
def list_customers_route():
    """
    Active customers ordered by name.

    Query params: search (name, email or phone), has_credit=true, page, page_size.
    """
    try:
        page, page_size = pagination_args(request.args)
        result = customer_service.list_customers(
            db.session,
            search=(request.args.get("search") or "").strip() or None,
            has_credit=flag_arg(request.args, "has_credit"),
            page=page,
            page_size=page_size,
        )
        return ok(result)
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to list customers")


@customers_bp.get("/credit/summary")
@require_auth
@require_permission("VIEW_CUSTOMERS")
def credit_summary_route():
    """Outstanding credit across active customers."""
    try:
        return ok(credit_service.credit_summary(db.session))
    except Exception:
        return server_error("Failed to load credit summary")


@customers_bp.get("/<int:customer_id>")
@require_auth
@require_permission("VIEW_CUSTOMERS")
def get_customer_route(customer_id: int):
    """Customer with recent credit transactions and sales."""
    try:
        return ok(customer_service.customer_detail(db.session, customer_id))
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to load customer")


@customers_bp.get("/<int:customer_id>/credit/reconcile")
@require_auth
@require_permission("ADJUST_CREDIT")
def reconcile_credit_route(customer_id: int):
    """
    Replay the customer's credit ledger against the stored balance.

    Requires: ADJUST_CREDIT permission
    Available to: admin
    """
    try:
        return ok(credit_service.reconcile_customer(db.session, customer_id))
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to reconcile customer credit")


@customers_bp.post("")
@require_auth
@require_permission("MANAGE_CUSTOMERS")
def create_customer_route():
    try:
        data = request.get_json(silent=True)
        patch = validate_payload(model=Customer, payload=data, policy=CUSTOMER_POLICY, partial=False)
        enforce_rules_customer(patch)

        customer = customer_service.create_customer(db.session, patch)
        return ok(customer.to_dict(), 201, message="Customer created")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to create customer")


@customers_bp.put("/<int:customer_id>")
@require_auth
@require_permission("MANAGE_CUSTOMERS")
def update_customer_route(customer_id: int):
    try:
        data = request.get_json(silent=True) or {}
        patch = validate_payload(model=Customer, payload=data, policy=CUSTOMER_POLICY, partial=True)
        enforce_rules_customer(patch)

        customer = customer_service.update_customer(db.session, customer_id, patch)
        return ok(customer.to_dict(), message="Customer updated")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to update customer")


@customers_bp.delete("/<int:customer_id>")
@require_auth
@require_permission("DEACTIVATE_CUSTOMER")
def delete_customer_route(customer_id: int):
    """
    Soft delete. Any outstanding balance stays on the ledger.

    Requires: DEACTIVATE_CUSTOMER permission
    Available to: admin, manager
    """
    try:
        customer = customer_service.deactivate_customer(db.session, customer_id)
        return ok(customer.to_dict(), message="Customer deactivated")
    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to deactivate customer")


@customers_bp.post("/<int:customer_id>/pay-credit")
@require_auth
@require_permission("RECORD_CREDIT_PAYMENT")
def pay_credit_route(customer_id: int):
    """
    Record a payment against the customer's credit balance.

    Requires: RECORD_CREDIT_PAYMENT permission
    Available to: admin, manager, cashier

    Request body: {"amount_cents": 2500, "description": "...", "reference": "..."}
    """
    try:
        data = request.get_json(silent=True) or {}
        require_fields(data, "amount_cents")

        customer, txn = credit_service.record_payment(
            db.session,
            customer_id,
            data["amount_cents"],
            user_id=g.current_user.id,
            description=optional_str(data, "description"),
            reference=optional_str(data, "reference", max_length=128),
        )
        return ok({"customer": customer.to_dict(), "transaction": txn.to_dict()}, message="Payment recorded")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to record credit payment")


@customers_bp.post("/<int:customer_id>/adjust-credit")
@require_auth
@require_permission("ADJUST_CREDIT")
def adjust_credit_route(customer_id: int):
    """
    Administrative credit balance correction by a signed amount.

    Requires: ADJUST_CREDIT permission
    Available to: admin

    Request body: {"amount_cents": -500, "description": "Goodwill write-off"}
    """
    try:
        data = request.get_json(silent=True) or {}
        require_fields(data, "amount_cents")

        customer, txn = credit_service.adjust_balance(
            db.session,
            customer_id,
            data["amount_cents"],
            user_id=g.current_user.id,
            description=optional_str(data, "description"),
        )
        return ok({"customer": customer.to_dict(), "transaction": txn.to_dict()}, message="Credit adjusted")

    except PosError as e:
        return from_error(e)
    except Exception:
        return server_error("Failed to adjust credit")
