# Overview: Service-layer operations for the product catalog; encapsulates business logic and database work.

"""
Catalog maintenance. Stock quantity is only written here once, when a
product is created with opening stock (recorded as an in/initial movement).
Afterwards it belongs to the stock service.
"""

from __future__ import annotations

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, StorageError
from ..models import Product
from . import stock_service
from .concurrency import atomic


def _ensure_unique(session: Session, *, sku: str | None, barcode: str | None, exclude_id: int | None = None) -> None:
    if sku is not None:
        query = session.query(Product.id).filter(Product.sku == sku)
        if exclude_id is not None:
            query = query.filter(Product.id != exclude_id)
        if query.first():
            raise ConflictError(f"SKU already exists: {sku}", "DUPLICATE_SKU", details={"sku": sku})
    if barcode:
        query = session.query(Product.id).filter(Product.barcode == barcode)
        if exclude_id is not None:
            query = query.filter(Product.id != exclude_id)
        if query.first():
            raise ConflictError(f"Barcode already exists: {barcode}", "DUPLICATE_BARCODE",
                                details={"barcode": barcode})


def _translate_integrity(exc: IntegrityError) -> ConflictError:
    message = str(exc.orig).lower()
    if "barcode" in message:
        return ConflictError("Barcode already exists", "DUPLICATE_BARCODE")
    return ConflictError("SKU already exists", "DUPLICATE_SKU")


def create_product(session: Session, fields: dict, *, user_id: int) -> Product:
    _ensure_unique(session, sku=fields.get("sku"), barcode=fields.get("barcode"))
    try:
        with atomic(session):
            product = Product(**fields)
            session.add(product)
            session.flush()
            stock_service.record_initial_stock(session, product, user_id=user_id)
    except StorageError as exc:
        if isinstance(exc.__cause__, IntegrityError):
            raise _translate_integrity(exc.__cause__) from exc
        raise
    return product


def update_product(session: Session, product_id: int, fields: dict) -> Product:
    """Update catalog fields. stock_quantity is never accepted here."""
    fields = {k: v for k, v in fields.items() if k != "stock_quantity"}
    product = stock_service.get_product(session, product_id)
    _ensure_unique(session, sku=fields.get("sku"), barcode=fields.get("barcode"), exclude_id=product.id)
    with atomic(session):
        for key, value in fields.items():
            setattr(product, key, value)
    return product


def deactivate_product(session: Session, product_id: int) -> Product:
    product = stock_service.get_product(session, product_id)
    with atomic(session):
        product.is_active = False
    return product


def get_by_barcode(session: Session, barcode: str) -> Product:
    product = session.query(Product).filter_by(barcode=barcode, is_active=True).first()
    if product is None:
        raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", details={"barcode": barcode})
    return product


def list_products(
    session: Session,
    *,
    search: str | None = None,
    low_stock: bool = False,
    page: int = 1,
    page_size: int = 50,
) -> dict:
    query = session.query(Product).filter(Product.is_active.is_(True))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Product.name.ilike(pattern),
            Product.sku.ilike(pattern),
            Product.barcode.ilike(pattern),
        ))
    if low_stock:
        query = query.filter(Product.stock_quantity <= Product.min_stock_level)

    total = query.count()
    products = (
        query.order_by(Product.name.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "products": [p.to_dict() for p in products],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size,
    }
