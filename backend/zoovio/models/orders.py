from __future__ import annotations

import uuid

from ..extensions import db
from zoovio.time_utils import to_utc_z, utcnow


def _new_order_id() -> str:
    return str(uuid.uuid4())


def _amount(value) -> str | None:
    return None if value is None else str(value)


class Order(db.Model):
    """
    One checkout attempt.

    STATUS:    pending -> confirmed | cancelled   (processing reserved)
    PAYMENT:   pending -> succeeded | failed | cancelled

    INVARIANTS:
    - checkout_session_id is set at most once (one order -> one checkout session)
    - cancelled / succeeded are terminal; only the reconciliation path
      (services/checkout_service.py) moves an order out of pending
    - never deleted
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_order_id)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Human-readable order number (e.g., "ZOO-1718000000000-K3J9QW2XZ")
    order_number = db.Column(db.String(64), nullable=False, unique=True)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    # External checkout session reference (set once)
    checkout_session_id = db.Column(db.String(255), nullable=True, unique=True)
    # Session-creation attempts; each attempt gets its own idempotency key
    checkout_attempts = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    shipping_address = db.Column(db.JSON, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "order_number": self.order_number,
            "total_amount": _amount(self.total_amount),
            "currency": self.currency,
            "checkout_session_id": self.checkout_session_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Immutable snapshot of one cart entry, created with its order."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(64), nullable=False, default="")
    breed = db.Column(db.String(128), nullable=False, default="")
    image_url = db.Column(db.String(1024), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "category": self.category,
            "breed": self.breed,
            "image_url": self.image_url,
            "quantity": self.quantity,
            "unit_price": _amount(self.unit_price),
            "line_total": _amount(self.line_total),
            "created_at": to_utc_z(self.created_at),
        }
