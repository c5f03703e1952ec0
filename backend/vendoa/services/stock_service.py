# Overview: Service-layer operations for stock control; encapsulates business logic and database work.

"""
Stock Control Invariants (authoritative)

- Product.stock_quantity is never negative. Every decrement is a
  compare-and-set UPDATE guarded by ``stock_quantity >= q``; zero rows
  affected means the stock was not there at write time.
- Every quantity change appends exactly one StockMovement in the same DB
  transaction (quantity is the magnitude, type gives the direction).
- Movements are append-only. The signed sum of a product's movements is
  expected to equal its stock_quantity; ``movement_balance`` exposes that
  sum for audits but nothing enforces it at write time.

Every function takes the SQLAlchemy session as its first argument. Public
operations (receive, adjust) own their transaction; the ``*_in_transaction``
helpers are building blocks for the sale and refund services and never
commit.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..errors import ConflictError, InvariantError, NotFoundError, ValidationError
from ..models import Product, StockMovement
from ..models.catalog import MOVEMENT_REASONS
from ..validation import MAX_QUANTITY
from .concurrency import atomic, compare_and_set, lock_for_update

logger = logging.getLogger(__name__)


def _require_quantity(quantity, *, allow_negative: bool = False) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer", "INVALID_QUANTITY")
    if allow_negative:
        if quantity == 0:
            raise ValidationError("quantity must be non-zero", "INVALID_QUANTITY")
    elif quantity <= 0:
        raise ValidationError("quantity must be a positive integer", "INVALID_QUANTITY")
    if abs(quantity) > MAX_QUANTITY:
        raise ValidationError(
            f"quantity cannot exceed {MAX_QUANTITY}", "INVALID_QUANTITY", details={"max": MAX_QUANTITY},
        )
    return quantity


def get_product(session: Session, product_id: int, *, lock: bool = False) -> Product:
    query = session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError(f"Product not found: {product_id}", "PRODUCT_NOT_FOUND",
                            details={"product_id": product_id})
    return product


def _append_movement(
    session: Session,
    *,
    product_id: int,
    quantity: int,
    type: str,
    reason: str,
    user_id: int,
    notes: str | None = None,
    sale_id: int | None = None,
    sale_item_id: int | None = None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product_id,
        quantity=quantity,
        type=type,
        reason=reason,
        notes=notes,
        user_id=user_id,
        sale_id=sale_id,
        sale_item_id=sale_item_id,
    )
    session.add(movement)
    session.flush()
    return movement


def decrement_in_transaction(
    session: Session,
    product: Product,
    quantity: int,
    *,
    user_id: int,
    reason: str,
    notes: str | None = None,
    sale_id: int | None = None,
    sale_item_id: int | None = None,
) -> StockMovement:
    """
    Remove ``quantity`` units and append an "out" movement. Does not commit.

    Raises ConflictError(INSUFFICIENT_STOCK) when the guarded UPDATE
    affects no rows; the caller's transaction must then be rolled back.
    """
    ok = compare_and_set(
        session,
        Product,
        product.id,
        where=(Product.stock_quantity >= quantity,),
        values={"stock_quantity": Product.stock_quantity - quantity},
    )
    if not ok:
        session.refresh(product)
        raise ConflictError(
            f"Insufficient stock for {product.name}. Available: {product.stock_quantity}",
            "INSUFFICIENT_STOCK",
            details={
                "product_id": product.id,
                "requested": quantity,
                "available": product.stock_quantity,
            },
        )
    return _append_movement(
        session,
        product_id=product.id,
        quantity=quantity,
        type="out",
        reason=reason,
        user_id=user_id,
        notes=notes,
        sale_id=sale_id,
        sale_item_id=sale_item_id,
    )


def increment_in_transaction(
    session: Session,
    product: Product,
    quantity: int,
    *,
    user_id: int,
    reason: str,
    notes: str | None = None,
    sale_id: int | None = None,
    sale_item_id: int | None = None,
) -> StockMovement:
    """Add ``quantity`` units and append an "in" movement. Does not commit."""
    ok = compare_and_set(
        session,
        Product,
        product.id,
        values={"stock_quantity": Product.stock_quantity + quantity},
    )
    if not ok:
        raise NotFoundError(f"Product not found: {product.id}", "PRODUCT_NOT_FOUND",
                            details={"product_id": product.id})
    return _append_movement(
        session,
        product_id=product.id,
        quantity=quantity,
        type="in",
        reason=reason,
        user_id=user_id,
        notes=notes,
        sale_id=sale_id,
        sale_item_id=sale_item_id,
    )


def receive(
    session: Session,
    product_id: int,
    quantity: int,
    *,
    user_id: int,
    notes: str | None = None,
) -> tuple[Product, StockMovement]:
    """
    Receive purchased stock: stock += quantity, movement in/purchase.
    """
    _require_quantity(quantity)

    with atomic(session):
        product = get_product(session, product_id, lock=True)
        movement = increment_in_transaction(
            session, product, quantity, user_id=user_id, reason="purchase", notes=notes,
        )

    session.refresh(product)
    logger.info("Received %d x product %s (stock now %d)", quantity, product.id, product.stock_quantity)
    return product, movement


def adjust(
    session: Session,
    product_id: int,
    quantity: int,
    reason: str,
    *,
    user_id: int,
    notes: str | None = None,
) -> tuple[Product, StockMovement]:
    """
    Correct on-hand stock by a signed quantity (damage, theft, counts, ...).

    The new quantity may not be negative (NEGATIVE_STOCK). Movement type is
    "in" for positive adjustments and "out" for negative ones; the stored
    quantity is the magnitude.
    """
    _require_quantity(quantity, allow_negative=True)
    if reason not in MOVEMENT_REASONS:
        raise ValidationError(
            f"Invalid reason: {reason}", "INVALID_REASON",
            details={"allowed": list(MOVEMENT_REASONS)},
        )

    # Fail fast on the pre-read; the guarded UPDATE below re-checks at write time.
    product = get_product(session, product_id)
    if product.stock_quantity + quantity < 0:
        raise InvariantError(
            "Adjustment would result in negative stock",
            "NEGATIVE_STOCK",
            details={"product_id": product.id, "available": product.stock_quantity, "adjustment": quantity},
        )

    with atomic(session):
        product = get_product(session, product_id, lock=True)
        if quantity >= 0:
            movement = increment_in_transaction(
                session, product, quantity, user_id=user_id, reason=reason, notes=notes,
            )
        else:
            try:
                movement = decrement_in_transaction(
                    session, product, -quantity, user_id=user_id, reason=reason, notes=notes,
                )
            except ConflictError as exc:
                raise InvariantError(
                    "Adjustment would result in negative stock",
                    "NEGATIVE_STOCK",
                    details={
                        "product_id": product.id,
                        "available": exc.details.get("available"),
                        "adjustment": quantity,
                    },
                ) from exc

    session.refresh(product)
    logger.info("Adjusted product %s by %d (%s)", product.id, quantity, reason)
    return product, movement


def record_initial_stock(session: Session, product: Product, *, user_id: int) -> StockMovement | None:
    """
    Append the in/initial movement for a newly created product. Does not commit.

    The product row already carries its opening stock_quantity.
    """
    if not product.stock_quantity:
        return None
    return _append_movement(
        session,
        product_id=product.id,
        quantity=product.stock_quantity,
        type="in",
        reason="initial",
        user_id=user_id,
        notes="Initial stock",
    )


def list_movements(
    session: Session,
    *,
    product_id: int | None = None,
    type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    page_size: int = 50,
) -> dict:
    query = session.query(StockMovement)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if type:
        query = query.filter(StockMovement.type == type)
    if start is not None and end is not None:
        query = query.filter(StockMovement.created_at >= start, StockMovement.created_at <= end)

    total = query.count()
    movements = (
        query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "movements": [m.to_dict(include_product=True) for m in movements],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size,
    }


def low_stock_products(session: Session) -> list[Product]:
    return (
        session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_quantity <= Product.min_stock_level)
        .order_by(Product.stock_quantity.asc(), Product.name.asc())
        .all()
    )


def movement_balance(session: Session, product_id: int) -> int:
    """Signed sum of all movements for a product ("out" counts negative)."""
    signed = case((StockMovement.type == "out", -StockMovement.quantity), else_=StockMovement.quantity)
    total = (
        session.query(func.coalesce(func.sum(signed), 0))
        .filter(StockMovement.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def audit_stock(session: Session) -> list[dict]:
    """Products whose stock_quantity differs from their movement balance."""
    mismatches = []
    for product in session.query(Product).order_by(Product.id).all():
        balance = movement_balance(session, product.id)
        if balance != product.stock_quantity:
            mismatches.append({
                "product_id": product.id,
                "sku": product.sku,
                "stock_quantity": product.stock_quantity,
                "movement_balance": balance,
            })
    return mismatches
