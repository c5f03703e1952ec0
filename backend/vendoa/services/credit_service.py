# Overview: Service-layer operations for the customer credit ledger; encapsulates business logic and database work.

"""
Credit Ledger Invariants (authoritative)

- Customer.credit_balance_cents is never negative.
- For customers with a limit (credit_limit_cents > 0), a credit purchase
  never leaves the balance above the limit. The check is part of the
  guarded UPDATE, not a separate read.
- Every balance change appends exactly one CreditTransaction in the same
  DB transaction, with balance_after_cents equal to the balance written.
- Replaying a customer's transactions in creation order (purchase: +,
  payment: -, adjustment: set to balance_after) reproduces the current
  balance. ``reconcile_customer`` checks exactly that.

Adjustments are administrative and may push a balance above the limit.
"""

from __future__ import annotations

import logging

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Customer, CreditTransaction, Sale
from ..validation import MAX_AMOUNT_CENTS
from .concurrency import atomic, compare_and_set, lock_for_update

logger = logging.getLogger(__name__)


def _require_amount(amount, *, allow_negative: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("amount_cents must be an integer", "INVALID_AMOUNT")
    if allow_negative:
        if amount == 0:
            raise ValidationError("amount_cents must be non-zero", "INVALID_AMOUNT")
    elif amount <= 0:
        raise ValidationError("Payment amount must be positive", "INVALID_AMOUNT")
    if abs(amount) > MAX_AMOUNT_CENTS:
        raise ValidationError(
            f"amount_cents cannot exceed {MAX_AMOUNT_CENTS}", "INVALID_AMOUNT", details={"max": MAX_AMOUNT_CENTS},
        )
    return amount


def get_customer(session: Session, customer_id: int, *, lock: bool = False) -> Customer:
    query = session.query(Customer).filter_by(id=customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if customer is None:
        raise NotFoundError("Customer not found", "CUSTOMER_NOT_FOUND", details={"customer_id": customer_id})
    return customer


def _balance_details(customer: Customer, **extra) -> dict:
    details = {
        "customer_id": customer.id,
        "credit_balance_cents": customer.credit_balance_cents,
        "credit_limit_cents": customer.credit_limit_cents,
    }
    details.update(extra)
    return details


def _append_transaction(
    session: Session,
    customer: Customer,
    *,
    amount_cents: int,
    type: str,
    user_id: int | None,
    description: str | None = None,
    reference: str | None = None,
    sale_id: int | None = None,
) -> CreditTransaction:
    # Read the balance back inside the transaction so the snapshot is the value written.
    session.refresh(customer, attribute_names=["credit_balance_cents"])
    txn = CreditTransaction(
        customer_id=customer.id,
        sale_id=sale_id,
        amount_cents=amount_cents,
        type=type,
        description=description,
        reference=reference,
        balance_after_cents=customer.credit_balance_cents,
        user_id=user_id,
    )
    session.add(txn)
    session.flush()
    return txn


def check_credit_available(customer: Customer, amount_cents: int) -> None:
    """Pre-transaction credit limit check used by checkout validation."""
    new_balance = customer.credit_balance_cents + amount_cents
    if customer.credit_limit_cents > 0 and new_balance > customer.credit_limit_cents:
        raise ConflictError(
            "Credit limit exceeded. "
            f"Current balance: {customer.credit_balance_cents / 100:.2f}, "
            f"Limit: {customer.credit_limit_cents / 100:.2f}, "
            f"This purchase: {amount_cents / 100:.2f}",
            "CREDIT_LIMIT_EXCEEDED",
            details=_balance_details(customer, requested_cents=amount_cents),
        )


def record_purchase_in_transaction(
    session: Session,
    customer: Customer,
    sale: Sale,
    *,
    user_id: int,
) -> CreditTransaction:
    """
    Charge a credit sale to the customer's balance. Does not commit.

    Only the sales service calls this, inside the checkout transaction.
    """
    amount = sale.total_cents
    ok = compare_and_set(
        session,
        Customer,
        customer.id,
        where=(
            (Customer.credit_limit_cents == 0)
            | (Customer.credit_balance_cents + amount <= Customer.credit_limit_cents),
        ),
        values={"credit_balance_cents": Customer.credit_balance_cents + amount},
    )
    if not ok:
        session.refresh(customer)
        raise ConflictError(
            "Credit limit exceeded",
            "CREDIT_LIMIT_EXCEEDED",
            details=_balance_details(customer, requested_cents=amount),
        )
    return _append_transaction(
        session,
        customer,
        amount_cents=amount,
        type="purchase",
        user_id=user_id,
        description=f"Purchase - Receipt {sale.receipt_number}",
        reference=sale.receipt_number,
        sale_id=sale.id,
    )


def record_payment(
    session: Session,
    customer_id: int,
    amount_cents: int,
    *,
    user_id: int,
    description: str | None = None,
    reference: str | None = None,
) -> tuple[Customer, CreditTransaction]:
    """
    Record a customer paying down their credit balance.

    Fails CUSTOMER_NOT_FOUND, INVALID_AMOUNT (<= 0) or
    PAYMENT_EXCEEDS_BALANCE (amount > current balance).
    """
    customer = get_customer(session, customer_id)
    _require_amount(amount_cents)

    if amount_cents > customer.credit_balance_cents:
        raise ConflictError(
            f"Payment amount exceeds credit balance of {customer.credit_balance_cents / 100:.2f}",
            "PAYMENT_EXCEEDS_BALANCE",
            details=_balance_details(customer, requested_cents=amount_cents),
        )

    with atomic(session):
        customer = get_customer(session, customer_id, lock=True)
        ok = compare_and_set(
            session,
            Customer,
            customer.id,
            where=(Customer.credit_balance_cents >= amount_cents,),
            values={"credit_balance_cents": Customer.credit_balance_cents - amount_cents},
        )
        if not ok:
            session.refresh(customer)
            raise ConflictError(
                f"Payment amount exceeds credit balance of {customer.credit_balance_cents / 100:.2f}",
                "PAYMENT_EXCEEDS_BALANCE",
                details=_balance_details(customer, requested_cents=amount_cents),
            )
        txn = _append_transaction(
            session,
            customer,
            amount_cents=amount_cents,
            type="payment",
            user_id=user_id,
            description=description or "Credit payment",
            reference=reference,
        )

    session.refresh(customer)
    logger.info("Credit payment of %d cents for customer %s (balance now %d)",
                amount_cents, customer.id, customer.credit_balance_cents)
    return customer, txn


def adjust_balance(
    session: Session,
    customer_id: int,
    amount_cents: int,
    *,
    user_id: int,
    description: str | None = None,
) -> tuple[Customer, CreditTransaction]:
    """
    Administrative balance correction by a signed amount.

    The resulting balance is clamped at zero. The ledger row stores the
    magnitude of the requested adjustment; balance_after_cents carries the
    resulting balance.
    """
    _require_amount(amount_cents, allow_negative=True)

    with atomic(session):
        customer = get_customer(session, customer_id, lock=True)
        # Clamp in SQL so the result is computed from the balance at write time
        adjusted = Customer.credit_balance_cents + amount_cents
        compare_and_set(
            session,
            Customer,
            customer.id,
            values={"credit_balance_cents": case((adjusted < 0, 0), else_=adjusted)},
        )
        txn = _append_transaction(
            session,
            customer,
            amount_cents=abs(amount_cents),
            type="adjustment",
            user_id=user_id,
            description=description or "Manual adjustment",
        )

    session.refresh(customer)
    logger.info("Credit adjustment of %d cents for customer %s by user %s",
                amount_cents, customer.id, user_id)
    return customer, txn


def credit_history(session: Session, customer_id: int, *, limit: int = 50) -> list[CreditTransaction]:
    return (
        session.query(CreditTransaction)
        .filter_by(customer_id=customer_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(limit)
        .all()
    )


def credit_summary(session: Session) -> dict:
    customers = (
        session.query(Customer)
        .filter(Customer.credit_balance_cents > 0, Customer.is_active.is_(True))
        .order_by(Customer.credit_balance_cents.desc())
        .all()
    )
    total_outstanding = (
        session.query(func.coalesce(func.sum(Customer.credit_balance_cents), 0))
        .filter(Customer.credit_balance_cents > 0, Customer.is_active.is_(True))
        .scalar()
    )
    return {
        "total_outstanding_cents": int(total_outstanding or 0),
        "customers_with_credit": len(customers),
        "customers": [
            {
                "id": c.id,
                "name": c.name,
                "phone": c.phone,
                "credit_balance_cents": c.credit_balance_cents,
                "credit_limit_cents": c.credit_limit_cents,
            }
            for c in customers
        ],
    }


def reconcile_customer(session: Session, customer_id: int) -> dict:
    """
    Replay the customer's ledger in creation order and compare with the
    stored balance. Also flags rows whose balance_after_cents disagrees
    with the running balance.
    """
    customer = get_customer(session, customer_id)
    txns = (
        session.query(CreditTransaction)
        .filter_by(customer_id=customer_id)
        .order_by(CreditTransaction.created_at.asc(), CreditTransaction.id.asc())
        .all()
    )

    running = 0
    mismatched_rows = []
    for txn in txns:
        if txn.type == "purchase":
            running += txn.amount_cents
        elif txn.type == "payment":
            running -= txn.amount_cents
        else:
            running = txn.balance_after_cents
        if running != txn.balance_after_cents:
            mismatched_rows.append(txn.id)

    return {
        "customer_id": customer.id,
        "credit_balance_cents": customer.credit_balance_cents,
        "replayed_balance_cents": running,
        "transactions": len(txns),
        "mismatched_transaction_ids": mismatched_rows,
        "consistent": running == customer.credit_balance_cents and not mismatched_rows,
    }


def audit_credit(session: Session) -> list[dict]:
    """Reconciliation results for every customer that fails to replay."""
    results = []
    for (customer_id,) in session.query(Customer.id).order_by(Customer.id).all():
        result = reconcile_customer(session, customer_id)
        if not result["consistent"]:
            results.append(result)
    return results
