"""
Checkout tests.

Verifies:
- the worked checkout scenarios (cash, insufficient stock, credit limit, credit purchase)
- a failed checkout leaves no Sale, SaleItem, StockMovement or CreditTransaction behind
- sale items keep the price they were sold at
- receipt number collisions re-run the checkout with a fresh number
"""

import pytest
from sqlalchemy import update

from vendoa.errors import ConflictError, NotFoundError, ValidationError
from vendoa.models import CreditTransaction, Customer, Product, Sale, SaleItem, StockMovement
from vendoa.services import credit_service, products_service, sales_service, stock_service
from vendoa.services.sales_service import ReceiptNumberCollision
from vendoa.validation import MAX_AMOUNT_CENTS


def _checkout(session, user, items, **kwargs):
    kwargs.setdefault("payment_method", "cash")
    return sales_service.checkout(session, user_id=user.id, items=items, **kwargs)


def _row_counts(session):
    return {
        "sales": session.query(Sale).count(),
        "sale_items": session.query(SaleItem).count(),
        "movements": session.query(StockMovement).count(),
        "credit": session.query(CreditTransaction).count(),
    }


class TestCashCheckout:

    def test_cash_sale_totals_change_and_stock(self, db_session, cashier_user, make_product):
        product = make_product(price_cents=150, stock=10)

        sale = _checkout(
            db_session, cashier_user,
            [{"product_id": product.id, "quantity": 3}],
            amount_paid_cents=500,
        )

        assert sale.total_cents == 450
        assert sale.subtotal_cents == 450
        assert sale.change_cents == 50
        assert sale.amount_paid_cents == 500
        assert sale.status == "completed"
        assert sale.user_id == cashier_user.id
        assert db_session.get(Product, product.id).stock_quantity == 7

        movements = db_session.query(StockMovement).filter_by(product_id=product.id, reason="sale").all()
        assert len(movements) == 1
        assert movements[0].type == "out"
        assert movements[0].quantity == 3
        assert movements[0].sale_id == sale.id
        assert movements[0].sale_item_id == sale.items[0].id
        assert movements[0].notes == f"Sale {sale.receipt_number}"

    def test_receipt_number_format(self, db_session, cashier_user, make_product):
        product = make_product()
        sale = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                         amount_paid_cents=150)

        prefix, stamp, suffix = sale.receipt_number.split("-")
        assert prefix == "RCP"
        assert len(stamp) == 6 and stamp.isdigit()
        assert len(suffix) == 4 and suffix.isdigit()

    def test_line_and_sale_discounts(self, db_session, cashier_user, make_product):
        a = make_product(price_cents=1000, stock=5)
        b = make_product(price_cents=250, stock=5)

        sale = _checkout(
            db_session, cashier_user,
            [
                {"product_id": a.id, "quantity": 2, "discount_cents": 300},
                {"product_id": b.id, "quantity": 4},
            ],
            amount_paid_cents=3000,
            discount_cents=200,
        )

        assert [item.subtotal_cents for item in sale.items] == [1700, 1000]
        assert sale.subtotal_cents == 2700
        assert sale.discount_cents == 200
        assert sale.total_cents == 2500
        assert sale.change_cents == 500

    def test_repeated_product_is_checked_against_total_quantity(self, db_session, cashier_user, make_product):
        product = make_product(stock=4)

        with pytest.raises(ConflictError) as exc:
            _checkout(
                db_session, cashier_user,
                [{"product_id": product.id, "quantity": 3}, {"product_id": product.id, "quantity": 2}],
                amount_paid_cents=10000,
            )

        assert exc.value.code == "INSUFFICIENT_STOCK"
        assert exc.value.details["requested"] == 5
        assert exc.value.details["available"] == 4

    def test_insufficient_payment(self, db_session, cashier_user, make_product):
        product = make_product(price_cents=150, stock=10)
        before = _row_counts(db_session)

        with pytest.raises(ConflictError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 3}],
                      amount_paid_cents=400)

        assert exc.value.code == "INSUFFICIENT_PAYMENT"
        assert _row_counts(db_session) == before

    def test_optional_customer_on_cash_sale(self, db_session, cashier_user, make_product, make_customer):
        product = make_product()
        customer = make_customer(credit_balance_cents=0)

        sale = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                         amount_paid_cents=150, customer_id=customer.id)

        assert sale.customer_id == customer.id
        assert db_session.get(Customer, customer.id).credit_balance_cents == 0
        assert db_session.query(CreditTransaction).count() == 0


class TestCheckoutValidation:

    def test_insufficient_stock_writes_nothing(self, db_session, cashier_user, make_product):
        product = make_product(stock=2)
        before = _row_counts(db_session)

        with pytest.raises(ConflictError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 5}],
                      amount_paid_cents=10000)

        assert exc.value.code == "INSUFFICIENT_STOCK"
        assert exc.value.details["available"] == 2
        assert _row_counts(db_session) == before
        assert db_session.get(Product, product.id).stock_quantity == 2

    @pytest.mark.parametrize("items,code", [
        ([], "EMPTY_CART"),
        (None, "EMPTY_CART"),
        (["not-an-object"], "INVALID_ITEMS"),
        ([{"product_id": "1", "quantity": 1}], "INVALID_ITEMS"),
        ([{"product_id": 1, "quantity": 0}], "INVALID_QUANTITY"),
        ([{"product_id": 1, "quantity": 1.5}], "INVALID_QUANTITY"),
        ([{"product_id": 1, "quantity": 1, "discount_cents": -5}], "INVALID_DISCOUNT"),
        ([{"product_id": 1, "quantity": 10**20}], "INVALID_QUANTITY"),
        ([{"product_id": 1, "quantity": 1, "discount_cents": 10**20}], "INVALID_DISCOUNT"),
        ([{"product_id": 10**20, "quantity": 1}], "INVALID_ITEMS"),
    ])
    def test_malformed_cart(self, db_session, cashier_user, items, code):
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, items, amount_paid_cents=100)
        assert exc.value.code == code

    def test_unknown_payment_method(self, db_session, cashier_user, make_product):
        product = make_product()
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      payment_method="cheque", amount_paid_cents=150)
        assert exc.value.code == "INVALID_PAYMENT_METHOD"

    def test_amount_paid_required_for_cash(self, db_session, cashier_user, make_product):
        product = make_product()
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}])
        assert exc.value.code == "INVALID_AMOUNT"

    def test_amount_paid_above_cap(self, db_session, cashier_user, make_product):
        product = make_product()
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      amount_paid_cents=MAX_AMOUNT_CENTS + 1)
        assert exc.value.code == "INVALID_AMOUNT"

    def test_sale_discount_above_cap(self, db_session, cashier_user, make_product):
        product = make_product()
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      amount_paid_cents=150, discount_cents=10**20)
        assert exc.value.code == "INVALID_DISCOUNT"

    def test_unknown_product(self, db_session, cashier_user):
        with pytest.raises(NotFoundError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": 31337, "quantity": 1}], amount_paid_cents=100)
        assert exc.value.code == "PRODUCT_NOT_FOUND"

    def test_inactive_product(self, db_session, admin_user, cashier_user, make_product):
        product = make_product()
        products_service.deactivate_product(db_session, product.id)

        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      amount_paid_cents=150)
        assert exc.value.code == "PRODUCT_INACTIVE"

    def test_line_discount_larger_than_line(self, db_session, cashier_user, make_product):
        product = make_product(price_cents=100)
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user,
                      [{"product_id": product.id, "quantity": 1, "discount_cents": 101}],
                      amount_paid_cents=100)
        assert exc.value.code == "INVALID_DISCOUNT"

    def test_sale_discount_larger_than_subtotal(self, db_session, cashier_user, make_product):
        product = make_product(price_cents=100)
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      amount_paid_cents=100, discount_cents=150)
        assert exc.value.code == "INVALID_DISCOUNT"


class TestCreditCheckout:

    def test_credit_limit_exceeded(self, db_session, cashier_user, make_product, make_customer):
        customer = make_customer(credit_balance_cents=0, credit_limit_cents=10000)
        product = make_product(price_cents=15000, stock=3)
        before = _row_counts(db_session)

        with pytest.raises(ConflictError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      payment_method="credit", customer_id=customer.id)

        assert exc.value.code == "CREDIT_LIMIT_EXCEEDED"
        assert exc.value.details["credit_balance_cents"] == 0
        assert exc.value.details["credit_limit_cents"] == 10000
        assert _row_counts(db_session) == before

    def test_credit_limit_rechecked_at_write_time(self, db_session, cashier_user, make_product, make_customer,
                                                  monkeypatch):
        customer = make_customer(credit_balance_cents=5000, credit_limit_cents=10000)
        product = make_product(price_cents=4000, stock=3)
        before = _row_counts(db_session)

        real_check = credit_service.check_credit_available

        def balance_rises_after_check(cust, amount_cents):
            real_check(cust, amount_cents)
            # Another till charges the same customer between validation and write
            db_session.execute(
                update(Customer)
                .where(Customer.id == cust.id)
                .values(credit_balance_cents=9000)
                .execution_options(synchronize_session=False)
            )

        monkeypatch.setattr(credit_service, "check_credit_available", balance_rises_after_check)

        with pytest.raises(ConflictError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      payment_method="credit", customer_id=customer.id)

        assert exc.value.code == "CREDIT_LIMIT_EXCEEDED"
        assert exc.value.details["credit_balance_cents"] == 9000
        assert exc.value.details["credit_limit_cents"] == 10000
        assert _row_counts(db_session) == before
        assert db_session.get(Product, product.id).stock_quantity == 3
        assert db_session.get(Customer, customer.id).credit_balance_cents == 5000

    def test_credit_purchase_charges_balance(self, db_session, cashier_user, make_product, make_customer):
        customer = make_customer(credit_balance_cents=5000, credit_limit_cents=10000)
        product = make_product(price_cents=4000, stock=3)

        sale = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                         payment_method="credit", customer_id=customer.id)

        assert db_session.get(Customer, customer.id).credit_balance_cents == 9000
        assert sale.amount_paid_cents == 0
        assert sale.change_cents == 0

        txn = db_session.query(CreditTransaction).filter_by(customer_id=customer.id).one()
        assert txn.type == "purchase"
        assert txn.amount_cents == 4000
        assert txn.balance_after_cents == 9000
        assert txn.sale_id == sale.id
        assert txn.reference == sale.receipt_number
        assert txn.user_id == cashier_user.id

    def test_credit_requires_customer(self, db_session, cashier_user, make_product):
        product = make_product()
        with pytest.raises(ValidationError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      payment_method="credit")
        assert exc.value.code == "CUSTOMER_REQUIRED"

    def test_credit_to_unknown_customer(self, db_session, cashier_user, make_product):
        product = make_product()
        with pytest.raises(NotFoundError) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      payment_method="credit", customer_id=777)
        assert exc.value.code == "CUSTOMER_NOT_FOUND"

    def test_credit_to_deactivated_customer(self, db_session, cashier_user, make_product, make_customer):
        product = make_product()
        customer = make_customer(is_active=False)
        with pytest.raises(NotFoundError):
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      payment_method="credit", customer_id=customer.id)


class TestAtomicity:

    def test_failure_mid_transaction_rolls_back_everything(self, db_session, cashier_user, make_product,
                                                           make_customer, monkeypatch):
        customer = make_customer(credit_limit_cents=0)
        first = make_product(price_cents=100, stock=5)
        second = make_product(price_cents=200, stock=5)
        before = _row_counts(db_session)

        real_decrement = stock_service.decrement_in_transaction
        calls = []

        def failing_on_second_line(session, product, quantity, **kwargs):
            calls.append(product.id)
            if len(calls) == 2:
                raise ConflictError("Insufficient stock", "INSUFFICIENT_STOCK", details={"available": 0})
            return real_decrement(session, product, quantity, **kwargs)

        monkeypatch.setattr(stock_service, "decrement_in_transaction", failing_on_second_line)

        with pytest.raises(ConflictError):
            _checkout(
                db_session, cashier_user,
                [{"product_id": first.id, "quantity": 2}, {"product_id": second.id, "quantity": 1}],
                payment_method="credit",
                customer_id=customer.id,
            )

        assert calls == [first.id, second.id]
        assert _row_counts(db_session) == before
        assert db_session.get(Product, first.id).stock_quantity == 5
        assert db_session.get(Product, second.id).stock_quantity == 5
        assert db_session.get(Customer, customer.id).credit_balance_cents == 0


class TestPriceSnapshot:

    def test_price_change_does_not_touch_past_sales(self, db_session, cashier_user, make_product):
        product = make_product(price_cents=150, stock=10)
        sale = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 2}],
                         amount_paid_cents=300)

        products_service.update_product(db_session, product.id, {"price_cents": 999})

        reloaded = sales_service.get_sale(db_session, sale.id)
        assert reloaded.items[0].price_at_sale_cents == 150
        assert reloaded.items[0].subtotal_cents == 300
        assert reloaded.total_cents == 300
        assert reloaded.items[0].product.price_cents == 999


class TestReceiptNumbers:

    def test_collision_is_retried_with_fresh_number(self, db_session, cashier_user, make_product, monkeypatch):
        product = make_product(stock=10)
        first = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                          amount_paid_cents=150)

        numbers = iter([first.receipt_number, "RCP-991231-0001"])
        monkeypatch.setattr(sales_service, "generate_receipt_number", lambda now=None: next(numbers))

        second = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 2}],
                           amount_paid_cents=300)

        assert second.receipt_number == "RCP-991231-0001"
        assert db_session.query(Sale).count() == 2
        assert db_session.get(Product, product.id).stock_quantity == 7
        assert db_session.query(StockMovement).filter_by(reason="sale").count() == 2

    def test_gives_up_after_configured_attempts(self, app, db_session, cashier_user, make_product, monkeypatch):
        product = make_product(stock=10)
        first = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                          amount_paid_cents=150)

        attempts = []

        def always_taken(now=None):
            attempts.append(1)
            return first.receipt_number

        monkeypatch.setattr(sales_service, "generate_receipt_number", always_taken)
        monkeypatch.setitem(app.config, "RECEIPT_RETRY_ATTEMPTS", 3)

        with pytest.raises(ReceiptNumberCollision) as exc:
            _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                      amount_paid_cents=150)

        assert exc.value.code == "RECEIPT_COLLISION"
        assert len(attempts) == 3
        assert db_session.query(Sale).count() == 1
        assert db_session.get(Product, product.id).stock_quantity == 9

    def test_zero_retry_setting_still_runs_once(self, app, db_session, cashier_user, make_product, monkeypatch):
        product = make_product(stock=10)
        monkeypatch.setitem(app.config, "RECEIPT_RETRY_ATTEMPTS", 0)

        sale = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                         amount_paid_cents=150)

        assert sale.id is not None
        assert db_session.query(Sale).count() == 1


class TestListSales:

    def test_list_sales_pages_newest_first(self, db_session, cashier_user, make_product):
        product = make_product(stock=10)
        receipts = []
        for _ in range(3):
            sale = _checkout(db_session, cashier_user, [{"product_id": product.id, "quantity": 1}],
                             amount_paid_cents=150)
            receipts.append(sale.receipt_number)

        result = sales_service.list_sales(db_session, page=1, page_size=2)

        assert result["total"] == 3
        assert result["total_pages"] == 2
        assert [s["receipt_number"] for s in result["sales"]] == receipts[::-1][:2]
        assert result["sales"][0]["items"][0]["product"]["id"] == product.id

    def test_get_unknown_sale(self, db_session):
        with pytest.raises(NotFoundError) as exc:
            sales_service.get_sale(db_session, 123456)
        assert exc.value.code == "SALE_NOT_FOUND"
