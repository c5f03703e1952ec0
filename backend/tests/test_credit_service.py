"""
Credit ledger tests.

Verifies:
- payments and adjustments move the balance together with one ledger row
- balance_after_cents snapshots the balance written in the same transaction
- replaying the ledger reproduces the stored balance
"""

import pytest
from sqlalchemy import update

from vendoa.errors import ConflictError, NotFoundError, ValidationError
from vendoa.models import CreditTransaction, Customer
from vendoa.services import credit_service, sales_service
from vendoa.validation import MAX_AMOUNT_CENTS


def _ledger(session, customer_id):
    return (
        session.query(CreditTransaction)
        .filter_by(customer_id=customer_id)
        .order_by(CreditTransaction.id)
        .all()
    )


class TestRecordPayment:

    def test_payment_reduces_balance(self, db_session, cashier_user, make_customer):
        customer = make_customer(credit_balance_cents=15000, credit_limit_cents=50000)

        updated, txn = credit_service.record_payment(
            db_session, customer.id, 6000, user_id=cashier_user.id, reference="OR-77"
        )

        assert updated.credit_balance_cents == 9000
        assert txn.type == "payment"
        assert txn.amount_cents == 6000
        assert txn.balance_after_cents == 9000
        assert txn.reference == "OR-77"
        assert txn.user_id == cashier_user.id
        assert txn.description == "Credit payment"

    def test_payment_of_full_balance(self, db_session, cashier_user, make_customer):
        customer = make_customer(credit_balance_cents=15000)
        updated, txn = credit_service.record_payment(db_session, customer.id, 15000, user_id=cashier_user.id)
        assert updated.credit_balance_cents == 0
        assert txn.balance_after_cents == 0

    def test_payment_exceeding_balance_fails(self, db_session, cashier_user, make_customer):
        customer = make_customer(credit_balance_cents=15000)

        with pytest.raises(ConflictError) as exc:
            credit_service.record_payment(db_session, customer.id, 20000, user_id=cashier_user.id)

        assert exc.value.code == "PAYMENT_EXCEEDS_BALANCE"
        assert exc.value.details["credit_balance_cents"] == 15000
        assert db_session.get(Customer, customer.id).credit_balance_cents == 15000
        assert _ledger(db_session, customer.id) == []

    @pytest.mark.parametrize("amount", [0, -100, 12.5, "100", MAX_AMOUNT_CENTS + 1, 10**20])
    def test_invalid_amount(self, db_session, cashier_user, make_customer, amount):
        customer = make_customer(credit_balance_cents=15000)
        with pytest.raises(ValidationError) as exc:
            credit_service.record_payment(db_session, customer.id, amount, user_id=cashier_user.id)
        assert exc.value.code == "INVALID_AMOUNT"

    def test_unknown_customer(self, db_session, cashier_user):
        with pytest.raises(NotFoundError) as exc:
            credit_service.record_payment(db_session, 4242, 100, user_id=cashier_user.id)
        assert exc.value.code == "CUSTOMER_NOT_FOUND"

    def test_guarded_update_catches_stale_balance(self, db_session, cashier_user, make_customer):
        customer = make_customer(credit_balance_cents=5000)
        assert customer.credit_balance_cents == 5000

        # Balance drops after the pre-check has read it
        db_session.execute(
            update(Customer)
            .where(Customer.id == customer.id)
            .values(credit_balance_cents=1000)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConflictError) as exc:
            credit_service.record_payment(db_session, customer.id, 3000, user_id=cashier_user.id)

        assert exc.value.code == "PAYMENT_EXCEEDS_BALANCE"
        assert _ledger(db_session, customer.id) == []


class TestAdjustBalance:

    def test_positive_adjustment(self, db_session, admin_user, make_customer):
        customer = make_customer(credit_balance_cents=1000)

        updated, txn = credit_service.adjust_balance(
            db_session, customer.id, 2500, user_id=admin_user.id, description="Opening balance import"
        )

        assert updated.credit_balance_cents == 3500
        assert txn.type == "adjustment"
        assert txn.amount_cents == 2500
        assert txn.balance_after_cents == 3500

    def test_negative_adjustment_is_clamped_at_zero(self, db_session, admin_user, make_customer):
        customer = make_customer(credit_balance_cents=1000)

        updated, txn = credit_service.adjust_balance(db_session, customer.id, -5000, user_id=admin_user.id)

        assert updated.credit_balance_cents == 0
        assert txn.amount_cents == 5000
        assert txn.balance_after_cents == 0

    def test_adjustment_may_exceed_limit(self, db_session, admin_user, make_customer):
        customer = make_customer(credit_balance_cents=0, credit_limit_cents=1000)
        updated, _ = credit_service.adjust_balance(db_session, customer.id, 5000, user_id=admin_user.id)
        assert updated.credit_balance_cents == 5000

    def test_zero_adjustment_is_rejected(self, db_session, admin_user, make_customer):
        customer = make_customer()
        with pytest.raises(ValidationError) as exc:
            credit_service.adjust_balance(db_session, customer.id, 0, user_id=admin_user.id)
        assert exc.value.code == "INVALID_AMOUNT"

    def test_adjustment_beyond_cap_is_rejected(self, db_session, admin_user, make_customer):
        customer = make_customer(credit_balance_cents=1000)
        with pytest.raises(ValidationError) as exc:
            credit_service.adjust_balance(db_session, customer.id, 10**20, user_id=admin_user.id)
        assert exc.value.code == "INVALID_AMOUNT"
        assert db_session.get(Customer, customer.id).credit_balance_cents == 1000


class TestCreditLimitCheck:

    def test_unlimited_when_limit_is_zero(self, make_customer):
        customer = make_customer(credit_balance_cents=10**8, credit_limit_cents=0)
        credit_service.check_credit_available(customer, 10**6)

    def test_limit_is_inclusive(self, make_customer):
        customer = make_customer(credit_balance_cents=6000, credit_limit_cents=10000)
        credit_service.check_credit_available(customer, 4000)
        with pytest.raises(ConflictError) as exc:
            credit_service.check_credit_available(customer, 4001)
        assert exc.value.code == "CREDIT_LIMIT_EXCEEDED"
        assert exc.value.details["credit_limit_cents"] == 10000


class TestReconciliation:

    def test_ledger_replays_to_current_balance(self, db_session, admin_user, cashier_user,
                                               make_customer, make_product):
        customer = make_customer(credit_limit_cents=100000)
        product = make_product(price_cents=4000, stock=10)

        for _ in range(2):
            sales_service.checkout(
                db_session,
                user_id=cashier_user.id,
                items=[{"product_id": product.id, "quantity": 1}],
                payment_method="credit",
                customer_id=customer.id,
            )
        credit_service.record_payment(db_session, customer.id, 3000, user_id=cashier_user.id)
        credit_service.adjust_balance(db_session, customer.id, -1000, user_id=admin_user.id)
        credit_service.record_payment(db_session, customer.id, 500, user_id=cashier_user.id)

        result = credit_service.reconcile_customer(db_session, customer.id)

        assert result["consistent"] is True
        assert result["transactions"] == 5
        assert result["replayed_balance_cents"] == 3500
        assert result["credit_balance_cents"] == 3500
        assert credit_service.audit_credit(db_session) == []

    def test_direct_balance_edit_is_detected(self, db_session, cashier_user, make_customer):
        customer = make_customer(credit_limit_cents=0)
        credit_service.adjust_balance(db_session, customer.id, 2000, user_id=cashier_user.id)
        db_session.execute(update(Customer).where(Customer.id == customer.id).values(credit_balance_cents=9999))
        db_session.commit()

        result = credit_service.reconcile_customer(db_session, customer.id)

        assert result["consistent"] is False
        assert result["replayed_balance_cents"] == 2000
        assert [r["customer_id"] for r in credit_service.audit_credit(db_session)] == [customer.id]


class TestSummaryAndHistory:

    def test_credit_summary_counts_active_customers_with_balance(self, db_session, make_customer):
        make_customer(name="Ana", credit_balance_cents=1500)
        make_customer(name="Ben", credit_balance_cents=500)
        make_customer(name="Cy", credit_balance_cents=0)
        make_customer(name="Dee", credit_balance_cents=9000, is_active=False)

        summary = credit_service.credit_summary(db_session)

        assert summary["total_outstanding_cents"] == 2000
        assert summary["customers_with_credit"] == 2
        assert [c["name"] for c in summary["customers"]] == ["Ana", "Ben"]

    def test_history_is_newest_first(self, db_session, cashier_user, make_customer):
        customer = make_customer(credit_balance_cents=3000)
        credit_service.record_payment(db_session, customer.id, 1000, user_id=cashier_user.id, reference="A")
        credit_service.record_payment(db_session, customer.id, 1000, user_id=cashier_user.id, reference="B")

        history = credit_service.credit_history(db_session, customer.id)

        assert [t.reference for t in history] == ["B", "A"]
        assert [t.balance_after_cents for t in history] == [1000, 2000]
