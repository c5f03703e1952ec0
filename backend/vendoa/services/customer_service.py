# Overview: Service-layer operations for customer records; balances are owned by credit_service.

from __future__ import annotations

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import Customer, Sale
from ..time_utils import to_utc_z
from . import credit_service
from .concurrency import atomic


def create_customer(session: Session, fields: dict) -> Customer:
    # Opening balances are not accepted; balances only move through the ledger
    fields = {k: v for k, v in fields.items() if k != "credit_balance_cents"}
    with atomic(session):
        customer = Customer(**fields)
        session.add(customer)
    return customer


def update_customer(session: Session, customer_id: int, fields: dict) -> Customer:
    fields = {k: v for k, v in fields.items() if k != "credit_balance_cents"}
    customer = credit_service.get_customer(session, customer_id)
    with atomic(session):
        for key, value in fields.items():
            setattr(customer, key, value)
    return customer


def deactivate_customer(session: Session, customer_id: int) -> Customer:
    customer = credit_service.get_customer(session, customer_id)
    with atomic(session):
        customer.is_active = False
    return customer


def customer_detail(session: Session, customer_id: int) -> dict:
    """Customer with the latest credit transactions and sales."""
    customer = credit_service.get_customer(session, customer_id)
    recent_sales = (
        session.query(Sale)
        .filter_by(customer_id=customer.id)
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .limit(10)
        .all()
    )
    data = customer.to_dict()
    data["credit_transactions"] = [
        txn.to_dict(include_sale=True) for txn in credit_service.credit_history(session, customer.id)
    ]
    data["sales"] = [
        {
            "id": s.id,
            "receipt_number": s.receipt_number,
            "total_cents": s.total_cents,
            "payment_method": s.payment_method,
            "status": s.status,
            "created_at": to_utc_z(s.created_at),
        }
        for s in recent_sales
    ]
    return data


def list_customers(
    session: Session,
    *,
    search: str | None = None,
    has_credit: bool = False,
    page: int = 1,
    page_size: int = 50,
) -> dict:
    query = session.query(Customer).filter(Customer.is_active.is_(True))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Customer.name.ilike(pattern),
            Customer.email.ilike(pattern),
            Customer.phone.ilike(pattern),
        ))
    if has_credit:
        query = query.filter(Customer.credit_balance_cents > 0)

    total = query.count()
    customers = (
        query.order_by(Customer.name.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "customers": [c.to_dict() for c in customers],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size,
    }
