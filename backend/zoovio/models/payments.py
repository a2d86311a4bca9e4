from __future__ import annotations

from ..extensions import db
from zoovio.time_utils import to_utc_z, utcnow


class Payment(db.Model):
    """
    One settled or attempted charge.

    DESIGN:
    - At most one payment per checkout session (unique checkout_session_id);
      the constraint is the synchronization point between the verification
      call and the webhook when both try to record the same payment.
    - order_id is nullable for charges that are not tied to an order.
    - Mutated only to move status pending -> succeeded | failed.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Processor references
    checkout_session_id = db.Column(db.String(255), nullable=True, unique=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, unique=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    # Instrument metadata (optional)
    payment_method_type = db.Column(db.String(32), nullable=False, default="card")
    card_brand = db.Column(db.String(32), nullable=True)
    card_last_four = db.Column(db.String(4), nullable=True)
    billing_email = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending, succeeded, failed
    failure_reason = db.Column(db.Text, nullable=True)

    # Set only on terminal outcomes
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True))
    user = db.relationship("User", backref=db.backref("payments", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "checkout_session_id": self.checkout_session_id,
            "payment_intent_id": self.payment_intent_id,
            "amount": None if self.amount is None else str(self.amount),
            "currency": self.currency,
            "payment_method_type": self.payment_method_type,
            "card_brand": self.card_brand,
            "card_last_four": self.card_last_four,
            "billing_email": self.billing_email,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
