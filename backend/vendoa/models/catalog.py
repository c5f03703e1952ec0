from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


MOVEMENT_TYPES = ("in", "out", "adjustment")
MOVEMENT_REASONS = ("purchase", "sale", "return_item", "damaged", "theft", "adjustment", "initial")


class Product(db.Model):
    """
    Product master data.

    stock_quantity is the on-hand count. It is only changed through the
    stock service (receive/adjust/sale/return), each change paired with a
    StockMovement row in the same transaction.

    Products are never deleted; is_active=False hides them from the catalog
    while keeping historical sale items resolvable.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.UniqueConstraint("barcode", name="uq_products_barcode"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_name", "name"),
        db.Index("ix_products_active_stock", "is_active", "stock_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False)
    # Multiple NULL barcodes are allowed by the unique constraint
    barcode = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=False, default=0)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock_level = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} stock={self.stock_quantity}>"

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity <= self.min_stock_level

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "stock_quantity": self.stock_quantity,
            "min_stock_level": self.min_stock_level,
            "is_low_stock": self.is_low_stock,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only audit trail of on-hand quantity changes.

    quantity is always a positive magnitude; type gives the direction
    ("in" adds, "out" removes). Rows are never updated or deleted.

    sale_id / sale_item_id link sale and return movements back to the
    sale line that produced them.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)  # in, out, adjustment
    reason = db.Column(db.String(32), nullable=False, index=True)
    notes = db.Column(db.String(255), nullable=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=True, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))
    user = db.relationship("User")

    @property
    def signed_quantity(self) -> int:
        return -self.quantity if self.type == "out" else self.quantity

    def to_dict(self, include_product: bool = False) -> dict:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "type": self.type,
            "reason": self.reason,
            "notes": self.notes,
            "sale_id": self.sale_id,
            "sale_item_id": self.sale_item_id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_product and self.product is not None:
            data["product"] = {"id": self.product.id, "name": self.product.name, "sku": self.product.sku}
        if include_product and self.user is not None:
            data["user"] = {"id": self.user.id, "username": self.user.username}
        return data
