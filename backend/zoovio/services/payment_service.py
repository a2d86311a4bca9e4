# Overview: Payment ledger access; records processor-confirmed payments exactly once per checkout session.

"""
Payment Service

WHY: Payment rows are the durable record that money moved. Each checkout
session yields at most one payment (unique checkout_session_id), so
verification and webhook delivery can both call create_payment() safely.

STATUS: pending -> succeeded | failed. Only pending rows change.
"""

from __future__ import annotations

from ..extensions import db
from ..models import Order, Payment
from .order_lifecycle import PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCEEDED
from .processor_adapter import CheckoutSession
from zoovio.time_utils import utcnow


def find_payment_by_session(session_id: str) -> Payment | None:
    return db.session.query(Payment).filter_by(checkout_session_id=session_id).first()


def find_payment_by_intent(payment_intent_id: str) -> Payment | None:
    if not payment_intent_id:
        return None
    return db.session.query(Payment).filter_by(payment_intent_id=payment_intent_id).first()


def create_payment(order: Order, session: CheckoutSession) -> tuple[Payment, bool]:
    """
    Record a succeeded payment for a paid checkout session.

    Returns (payment, created). An existing row for the session is returned
    untouched. A concurrent insert for the same session surfaces as an
    IntegrityError at flush, which the caller's transaction treats as a lost race.
    """
    existing = find_payment_by_session(session.id)
    if existing is not None:
        return existing, False

    now = utcnow()
    payment = Payment(
        order_id=order.id,
        user_id=order.user_id,
        checkout_session_id=session.id,
        payment_intent_id=session.payment_intent_id,
        amount=order.total_amount,
        currency=order.currency,
        payment_method_type="card",
        billing_email=session.customer_email or order.customer_email,
        status=PAYMENT_SUCCEEDED,
        processed_at=now,
    )
    db.session.add(payment)
    db.session.flush()
    return payment, True


def mark_payment_succeeded(payment: Payment) -> bool:
    if payment.status != PAYMENT_PENDING:
        return False
    payment.status = PAYMENT_SUCCEEDED
    payment.processed_at = utcnow()
    return True


def mark_payment_failed(payment: Payment, reason: str | None) -> bool:
    if payment.status != PAYMENT_PENDING:
        return False
    payment.status = PAYMENT_FAILED
    payment.failure_reason = reason or "Payment failed"
    payment.processed_at = utcnow()
    return True


def get_payment_history(user_id: int) -> list[dict]:
    """
    A user's payments, newest first, with the order number and order status
    when the payment is linked to an order.
    """
    rows = (
        db.session.query(Payment, Order)
        .outerjoin(Order, Payment.order_id == Order.id)
        .filter(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )

    history = []
    for payment, order in rows:
        entry = payment.to_dict()
        entry["order_number"] = order.order_number if order else None
        entry["order_status"] = order.status if order else None
        history.append(entry)
    return history
