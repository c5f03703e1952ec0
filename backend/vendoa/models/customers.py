from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CREDIT_TRANSACTION_TYPES = ("purchase", "payment", "adjustment")


class Customer(db.Model):
    """
    Customer master data with a store credit account.

    credit_balance_cents is what the customer owes. It only moves through
    the credit service, always together with a CreditTransaction row.
    credit_limit_cents == 0 means no limit.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.CheckConstraint("credit_balance_cents >= 0", name="ck_customers_balance_non_negative"),
        db.CheckConstraint("credit_limit_cents >= 0", name="ck_customers_limit_non_negative"),
        db.Index("ix_customers_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    credit_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def __repr__(self) -> str:
        return f"<Customer id={self.id} name={self.name!r} balance={self.credit_balance_cents}>"

    @property
    def available_credit_cents(self) -> int | None:
        if self.credit_limit_cents == 0:
            return None
        return max(0, self.credit_limit_cents - self.credit_balance_cents)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "credit_balance_cents": self.credit_balance_cents,
            "credit_limit_cents": self.credit_limit_cents,
            "available_credit_cents": self.available_credit_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CreditTransaction(db.Model):
    """
    Append-only ledger of credit balance changes.

    TRANSACTION TYPES:
    - purchase: credit sale, balance goes up by amount
    - payment: customer paid down the balance, goes down by amount
    - adjustment: administrative correction; balance_after_cents is authoritative

    amount_cents is always stored as a positive magnitude.
    balance_after_cents is the customer's balance as written in the same
    DB transaction.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "credit_transactions"
    __table_args__ = (
        db.CheckConstraint("amount_cents >= 0", name="ck_credit_transactions_amount_non_negative"),
        db.Index("ix_credit_transactions_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(128), nullable=True)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    customer = db.relationship("Customer", backref=db.backref("credit_transactions", lazy="dynamic"))
    sale = db.relationship("Sale")

    def to_dict(self, include_sale: bool = False) -> dict:
        data = {
            "id": self.id,
            "customer_id": self.customer_id,
            "sale_id": self.sale_id,
            "amount_cents": self.amount_cents,
            "type": self.type,
            "description": self.description,
            "reference": self.reference,
            "balance_after_cents": self.balance_after_cents,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_sale and self.sale is not None:
            data["sale"] = {
                "receipt_number": self.sale.receipt_number,
                "total_cents": self.sale.total_cents,
                "created_at": to_utc_z(self.sale.created_at),
            }
        return data
