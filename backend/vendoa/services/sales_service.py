"""
Sales Service - checkout and sale lookup

Checkout is one all-or-nothing unit:

1. Validate the cart and payment input (no DB writes).
2. Batch-read products; check existence, active flag and stock.
3. Price every line from the product's current price (frozen on the
   SaleItem as price_at_sale_cents) and compute totals.
4. Branch on payment method: credit sales check the customer's limit,
   everything else must cover the total.
5. In one transaction: insert Sale + SaleItems, charge the credit ledger
   (credit only), decrement stock and append "out"/"sale" movements.

Step 5 re-validates stock and credit with guarded UPDATEs, so two checkouts
racing on the same scarce product cannot both succeed. A receipt-number
collision rolls the unit back and re-runs it with a fresh number.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Customer, Product, Sale, SaleItem
from ..models.sales import PAYMENT_METHODS
from ..time_utils import receipt_date_stamp
from ..validation import MAX_AMOUNT_CENTS, MAX_DB_INTEGER, MAX_QUANTITY
from . import credit_service, stock_service
from .concurrency import atomic, run_with_retry

logger = logging.getLogger(__name__)


class ReceiptNumberCollision(ConflictError):
    """Generated receipt number already exists; the checkout is re-run."""

    def __init__(self, receipt_number: str):
        super().__init__(
            f"Receipt number {receipt_number} already in use",
            "RECEIPT_COLLISION",
            details={"receipt_number": receipt_number},
        )


@dataclass
class CartLine:
    product_id: int
    quantity: int
    discount_cents: int = 0


@dataclass
class PricedLine:
    product: Product
    quantity: int
    price_at_sale_cents: int
    discount_cents: int
    subtotal_cents: int


def generate_receipt_number(now: datetime | None = None) -> str:
    """RCP-YYMMDD-#### with a random 4-digit suffix."""
    return f"RCP-{receipt_date_stamp(now)}-{random.randint(0, 9999):04d}"


def _is_receipt_collision(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "receipt_number" in message or "uq_sales_receipt_number" in message


def _non_negative_cents(value, field: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of cents", "INVALID_DISCOUNT")
    if value < 0:
        raise ValidationError(f"{field} must be >= 0", "INVALID_DISCOUNT")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}", "INVALID_DISCOUNT")
    return value


def _parse_cart(items) -> list[CartLine]:
    if not items:
        raise ValidationError("Cart is empty", "EMPTY_CART")

    lines = []
    for raw in items:
        if isinstance(raw, CartLine):
            line = raw
        elif isinstance(raw, dict):
            line = CartLine(
                product_id=raw.get("product_id"),
                quantity=raw.get("quantity"),
                discount_cents=raw.get("discount_cents") or 0,
            )
        else:
            raise ValidationError("Each item must be an object", "INVALID_ITEMS")

        if (
            isinstance(line.product_id, bool)
            or not isinstance(line.product_id, int)
            or not 0 < line.product_id <= MAX_DB_INTEGER
        ):
            raise ValidationError("product_id must be a positive integer", "INVALID_ITEMS")
        if (
            isinstance(line.quantity, bool)
            or not isinstance(line.quantity, int)
            or not 0 < line.quantity <= MAX_QUANTITY
        ):
            raise ValidationError(
                f"quantity must be an integer between 1 and {MAX_QUANTITY}", "INVALID_QUANTITY",
                details={"product_id": line.product_id},
            )
        line.discount_cents = _non_negative_cents(line.discount_cents, "discount_cents")
        lines.append(line)
    return lines


def _load_products(session: Session, lines: list[CartLine]) -> dict[int, Product]:
    product_ids = {line.product_id for line in lines}
    products = session.query(Product).filter(Product.id.in_(product_ids)).all()
    product_map = {p.id: p for p in products}

    requested: dict[int, int] = {}
    for line in lines:
        product = product_map.get(line.product_id)
        if product is None:
            raise NotFoundError(
                f"Product not found: {line.product_id}", "PRODUCT_NOT_FOUND",
                details={"product_id": line.product_id},
            )
        if not product.is_active:
            raise ValidationError(
                f"Product is inactive: {product.name}", "PRODUCT_INACTIVE",
                details={"product_id": product.id},
            )
        requested[product.id] = requested.get(product.id, 0) + line.quantity

    for product_id, quantity in requested.items():
        product = product_map[product_id]
        if product.stock_quantity < quantity:
            raise ConflictError(
                f"Insufficient stock for {product.name}. Available: {product.stock_quantity}",
                "INSUFFICIENT_STOCK",
                details={
                    "product_id": product.id,
                    "requested": quantity,
                    "available": product.stock_quantity,
                },
            )
    return product_map


def price_lines(lines: list[CartLine], product_map: dict[int, Product]) -> list[PricedLine]:
    priced = []
    for line in lines:
        product = product_map[line.product_id]
        gross = product.price_cents * line.quantity
        if line.discount_cents > gross:
            raise ValidationError(
                f"Discount exceeds line amount for {product.name}", "INVALID_DISCOUNT",
                details={"product_id": product.id, "line_amount_cents": gross},
            )
        priced.append(PricedLine(
            product=product,
            quantity=line.quantity,
            price_at_sale_cents=product.price_cents,
            discount_cents=line.discount_cents,
            subtotal_cents=gross - line.discount_cents,
        ))
    return priced


def _insert_sale(session: Session, sale: Sale) -> None:
    session.add(sale)
    try:
        session.flush()
    except IntegrityError as exc:
        if _is_receipt_collision(exc):
            raise ReceiptNumberCollision(sale.receipt_number) from exc
        raise


def checkout(
    session: Session,
    *,
    user_id: int,
    items,
    payment_method: str,
    amount_paid_cents: int | None = None,
    discount_cents: int | None = 0,
    customer_id: int | None = None,
    notes: str | None = None,
) -> Sale:
    """
    Create a completed sale. Returns the committed Sale with items loaded.

    Raises ValidationError, NotFoundError or ConflictError before any write
    when the cart, payment or customer is invalid. Conflicts found inside
    the transaction (stock or credit changed since validation) roll back
    every write of the attempt.
    """
    lines = _parse_cart(items)
    sale_discount = _non_negative_cents(discount_cents, "discount_cents")

    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {payment_method}", "INVALID_PAYMENT_METHOD",
            details={"allowed": list(PAYMENT_METHODS)},
        )
    is_credit = payment_method == "credit"

    if not is_credit:
        if (
            isinstance(amount_paid_cents, bool)
            or not isinstance(amount_paid_cents, int)
            or not 0 <= amount_paid_cents <= MAX_AMOUNT_CENTS
        ):
            raise ValidationError(
                f"amount_paid_cents must be an integer between 0 and {MAX_AMOUNT_CENTS}", "INVALID_AMOUNT",
            )
    elif not customer_id:
        raise ValidationError("Customer is required for credit payments", "CUSTOMER_REQUIRED")

    def _op() -> int:
        with atomic(session):
            product_map = _load_products(session, lines)
            priced = price_lines(lines, product_map)

            subtotal = sum(line.subtotal_cents for line in priced)
            total = subtotal - sale_discount
            if total < 0:
                raise ValidationError(
                    "Discount exceeds sale subtotal", "INVALID_DISCOUNT",
                    details={"subtotal_cents": subtotal},
                )

            customer = None
            if customer_id:
                customer = session.query(Customer).filter_by(id=customer_id).first()
                if customer is None or (is_credit and not customer.is_active):
                    raise NotFoundError(
                        "Customer not found", "CUSTOMER_NOT_FOUND", details={"customer_id": customer_id},
                    )

            if is_credit:
                credit_service.check_credit_available(customer, total)
                amount_paid, change = 0, 0
            else:
                amount_paid = amount_paid_cents
                change = amount_paid - total
                if change < 0:
                    raise ConflictError(
                        "Insufficient payment amount", "INSUFFICIENT_PAYMENT",
                        details={"total_cents": total, "amount_paid_cents": amount_paid},
                    )

            sale = Sale(
                receipt_number=generate_receipt_number(),
                subtotal_cents=subtotal,
                discount_cents=sale_discount,
                tax_cents=0,
                total_cents=total,
                payment_method=payment_method,
                amount_paid_cents=amount_paid,
                change_cents=change,
                status="completed",
                customer_id=customer.id if customer is not None else None,
                user_id=user_id,
                notes=notes,
            )
            _insert_sale(session, sale)

            sale_items = []
            for line in priced:
                item = SaleItem(
                    sale_id=sale.id,
                    product_id=line.product.id,
                    quantity=line.quantity,
                    price_at_sale_cents=line.price_at_sale_cents,
                    discount_cents=line.discount_cents,
                    subtotal_cents=line.subtotal_cents,
                )
                session.add(item)
                sale_items.append(item)
            session.flush()

            if is_credit:
                credit_service.record_purchase_in_transaction(session, customer, sale, user_id=user_id)

            for line, item in zip(priced, sale_items):
                stock_service.decrement_in_transaction(
                    session,
                    line.product,
                    line.quantity,
                    user_id=user_id,
                    reason="sale",
                    notes=f"Sale {sale.receipt_number}",
                    sale_id=sale.id,
                    sale_item_id=item.id,
                )
            sale_id = sale.id
        return sale_id

    sale_id = run_with_retry(
        _op,
        retry_on=(ReceiptNumberCollision,),
        attempts=current_app.config.get("RECEIPT_RETRY_ATTEMPTS", 5),
    )

    sale = get_sale(session, sale_id)
    logger.info("Sale %s completed: %d cents via %s by user %s",
                sale.receipt_number, sale.total_cents, sale.payment_method, user_id)
    return sale


def get_sale(session: Session, sale_id: int) -> Sale:
    sale = (
        session.query(Sale)
        .options(
            joinedload(Sale.items).joinedload(SaleItem.product),
            joinedload(Sale.user),
            joinedload(Sale.customer),
        )
        .filter(Sale.id == sale_id)
        .first()
    )
    if sale is None:
        raise NotFoundError("Sale not found", "SALE_NOT_FOUND", details={"sale_id": sale_id})
    return sale


def list_sales(
    session: Session,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    page_size: int = 50,
) -> dict:
    query = session.query(Sale)
    if start is not None and end is not None:
        query = query.filter(Sale.created_at >= start, Sale.created_at <= end)

    total = query.count()
    sales = (
        query.options(
            joinedload(Sale.items).joinedload(SaleItem.product),
            joinedload(Sale.user),
            joinedload(Sale.customer),
        )
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "sales": [s.to_dict(include_items=True) for s in sales],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size,
    }
