# Overview: Order ledger access; creates orders with their line items and applies state changes.

"""
Order Service

WHY: Single place that reads and writes Order rows. Functions here only
stage changes on db.session; the checkout broker decides transaction
boundaries (see concurrency.run_in_transaction).
"""

from __future__ import annotations

import secrets
import string

from ..extensions import db
from ..errors import AccessDeniedError, ConflictError, NotFoundError
from ..models import Order, OrderItem
from ..validation import CheckoutRequest
from .concurrency import lock_for_update
from .order_lifecycle import CUSTOMER_CANCELLED_STATE, ORDER_PENDING, PAYMENT_PENDING, OrderState, can_cancel
from zoovio.time_utils import epoch_millis


ORDER_NUMBER_ALPHABET = string.digits + string.ascii_uppercase
ORDER_NUMBER_SUFFIX_LENGTH = 9


def generate_order_number() -> str:
    """ZOO-<epoch millis>-<9 random base36 chars>, e.g. ZOO-1718000000000-K3J9QW2XZ."""
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(ORDER_NUMBER_SUFFIX_LENGTH))
    return f"ZOO-{epoch_millis()}-{suffix}"


def create_order(user_id: int, checkout: CheckoutRequest) -> Order:
    """
    Stage a pending order and its line items.

    The total is the sum of the validated cart lines; it is never
    recomputed after this point.
    """
    order = Order(
        user_id=user_id,
        order_number=generate_order_number(),
        total_amount=checkout.total,
        currency=checkout.currency,
        status=ORDER_PENDING,
        payment_status=PAYMENT_PENDING,
        customer_name=checkout.customer_name,
        customer_email=checkout.customer_email,
        shipping_address=checkout.shipping_address,
        billing_address=checkout.billing_address,
        notes=checkout.notes,
    )
    for item in checkout.items:
        order.items.append(OrderItem(
            product_id=item.product_id,
            product_name=item.name,
            category=item.category,
            breed=item.breed,
            image_url=item.image,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.line_total,
        ))

    db.session.add(order)
    db.session.flush()
    return order


def get_order(order_id: str) -> Order | None:
    return db.session.get(Order, order_id)


def lock_order(order_id: str) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order_for_user(order_id: str, user_id: int) -> Order:
    """
    Raises:
        NotFoundError: no such order
        AccessDeniedError: order belongs to another user
    """
    order = get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != user_id:
        raise AccessDeniedError("Access denied")
    return order


def find_order_by_session(session_id: str, user_id: int | None = None) -> Order | None:
    """Order linked to a checkout session, optionally restricted to one owner."""
    query = db.session.query(Order).filter_by(checkout_session_id=session_id)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    return query.first()


def list_orders_for_user(user_id: int) -> list[Order]:
    return (
        db.session.query(Order)
        .filter_by(user_id=user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def attach_checkout_session(order: Order, session_id: str) -> None:
    """
    Link the processor session to the order. The link is written once.

    The unique constraint on orders.checkout_session_id backs this up when
    two writers race.
    """
    if order.checkout_session_id == session_id:
        return
    if order.checkout_session_id is not None:
        raise ConflictError("Order already has a checkout session")
    order.checkout_session_id = session_id


def next_checkout_attempt(order: Order) -> int:
    """Claim the next session-creation attempt number for the order."""
    order.checkout_attempts = (order.checkout_attempts or 0) + 1
    return order.checkout_attempts


def update_order_status(order: Order, state: OrderState) -> bool:
    """Apply a computed state. Returns False when nothing changed."""
    if (order.status, order.payment_status) == tuple(state):
        return False
    order.status = state.status
    order.payment_status = state.payment_status
    return True


def current_state(order: Order) -> OrderState:
    return OrderState(order.status, order.payment_status)


def cancel_order(order: Order) -> bool:
    """
    Stage a shopper cancellation: (cancelled, cancelled).

    Raises:
        ConflictError: order already reached a terminal state
    """
    if not can_cancel(current_state(order)):
        raise ConflictError("Order can no longer be cancelled")
    return update_order_status(order, CUSTOMER_CANCELLED_STATE)
