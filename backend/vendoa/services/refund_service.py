"""
Refund Processing Service

Returns items of a completed sale to stock. For every refunded item the
product's stock goes back up by the item quantity and an "in"/"return_item"
movement referencing the sale item is appended.

DESIGN PRINCIPLES:
- A sale item is restocked at most once. Items already returned are found
  through their return_item movements.
- Status is "refunded" once every item of the sale has been returned,
  otherwise "partial_refund".
- The status write goes through the sale's version_id, so a refund racing
  another refund of the same sale fails instead of double-restocking.
- The credit ledger is not touched, even for credit sales: the customer's
  outstanding balance stands until it is paid or adjusted.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Product, Sale, StockMovement
from . import stock_service
from .concurrency import atomic, lock_for_update

logger = logging.getLogger(__name__)


SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_PARTIAL = "partial_refund"
SALE_STATUS_REFUNDED = "refunded"


def _already_refunded(sale: Sale) -> ConflictError:
    return ConflictError(
        "Sale already refunded", "ALREADY_REFUNDED",
        details={"sale_id": sale.id, "receipt_number": sale.receipt_number},
    )


def returned_item_ids(session: Session, sale_id: int) -> set[int]:
    rows = (
        session.query(StockMovement.sale_item_id)
        .filter(
            StockMovement.sale_id == sale_id,
            StockMovement.reason == "return_item",
            StockMovement.sale_item_id.isnot(None),
        )
        .all()
    )
    return {row[0] for row in rows}


def refund(session: Session, sale_id: int, *, user_id: int, item_ids: list[int] | None = None) -> Sale:
    """
    Refund all items of a sale, or only ``item_ids``.

    Raises:
        NotFoundError(SALE_NOT_FOUND)
        ValidationError(INVALID_ITEMS): an id does not belong to the sale
        ConflictError(ALREADY_REFUNDED): sale fully refunded, or every
            selected item was already returned
        ConflictError(CONCURRENT_MODIFICATION): another refund changed the
            sale while this one was in progress
    """
    if item_ids is not None:
        if not isinstance(item_ids, list) or any(
            isinstance(i, bool) or not isinstance(i, int) for i in item_ids
        ):
            raise ValidationError("item_ids must be a list of integers", "INVALID_ITEMS")
        if not item_ids:
            raise ValidationError("item_ids must not be empty; omit it to refund the whole sale", "INVALID_ITEMS")

    try:
        with atomic(session):
            sale = lock_for_update(session.query(Sale).filter_by(id=sale_id)).first()
            if sale is None:
                raise NotFoundError("Sale not found", "SALE_NOT_FOUND", details={"sale_id": sale_id})
            if sale.status == SALE_STATUS_REFUNDED:
                raise _already_refunded(sale)

            items_by_id = {item.id: item for item in sale.items}
            if item_ids is not None:
                unknown = sorted(set(item_ids) - set(items_by_id))
                if unknown:
                    raise ValidationError(
                        "Items do not belong to this sale", "INVALID_ITEMS",
                        details={"sale_id": sale.id, "item_ids": unknown},
                    )
                selected = [items_by_id[i] for i in sorted(set(item_ids))]
            else:
                selected = list(items_by_id.values())

            returned = returned_item_ids(session, sale.id)
            to_restock = [item for item in selected if item.id not in returned]
            if not to_restock:
                raise _already_refunded(sale)

            for item in to_restock:
                product = session.query(Product).filter_by(id=item.product_id).one()
                stock_service.increment_in_transaction(
                    session,
                    product,
                    item.quantity,
                    user_id=user_id,
                    reason="return_item",
                    notes=f"Refund for {sale.receipt_number}",
                    sale_id=sale.id,
                    sale_item_id=item.id,
                )

            returned.update(item.id for item in to_restock)
            if returned >= set(items_by_id):
                sale.status = SALE_STATUS_REFUNDED
            else:
                sale.status = SALE_STATUS_PARTIAL
            session.flush()
    except StaleDataError as exc:
        session.rollback()
        current = session.query(Sale).filter_by(id=sale_id).first()
        if current is not None and current.status == SALE_STATUS_REFUNDED:
            raise _already_refunded(current) from exc
        raise ConflictError(
            "Sale was modified by another request; retry the refund",
            "CONCURRENT_MODIFICATION",
            details={"sale_id": sale_id},
        ) from exc

    session.refresh(sale)
    logger.info("Refunded %d item(s) of sale %s by user %s (status %s)",
                len(to_restock), sale.receipt_number, user_id, sale.status)
    return sale
