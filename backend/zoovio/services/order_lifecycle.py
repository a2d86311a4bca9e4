# Overview: Order status transition rules shared by verification and webhook reconciliation.

"""
Order Lifecycle Rules

================================================================================
PURPOSE: One authoritative table for how processor signals move an order
================================================================================

Both reconciliation paths (the shopper's verification call and the
processor's webhook) feed the same signal into next_order_state(), so racing
calls converge on the same stored state no matter which arrives first.

TABLE A:
    paid            -> (confirmed, succeeded)
    unpaid/expired  -> (cancelled, failed)   unless already succeeded
    other           -> unchanged

TERMINAL:
    payment_status == succeeded   (success wins over any later expiry/failure)
    status == cancelled
    Re-applying a signal to a terminal order returns the same state.
================================================================================
"""

from __future__ import annotations

from typing import Literal, NamedTuple


ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PROCESSING = "processing"
ORDER_CANCELLED = "cancelled"

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"
PAYMENT_REQUIRES_ACTION = "requires_action"
PAYMENT_CANCELLED = "cancelled"

VALID_ORDER_STATUSES = {ORDER_PENDING, ORDER_CONFIRMED, ORDER_PROCESSING, ORDER_CANCELLED}
VALID_PAYMENT_STATUSES = {
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    PAYMENT_REQUIRES_ACTION,
    PAYMENT_CANCELLED,
}

SIGNAL_PAID = "paid"
SIGNAL_UNPAID = "unpaid"
SIGNAL_EXPIRED = "expired"
SIGNAL_OTHER = "other"
Signal = Literal["paid", "unpaid", "expired", "other"]


class OrderState(NamedTuple):
    status: str
    payment_status: str


PAID_STATE = OrderState(ORDER_CONFIRMED, PAYMENT_SUCCEEDED)
FAILED_STATE = OrderState(ORDER_CANCELLED, PAYMENT_FAILED)
CUSTOMER_CANCELLED_STATE = OrderState(ORDER_CANCELLED, PAYMENT_CANCELLED)


def signal_for_session(payment_status: str | None, session_status: str | None = None) -> Signal:
    """
    Reduce a processor checkout-session snapshot to a Table A signal.

    Paid wins over everything; an expired session is expired even though its
    payment_status still reads "unpaid".
    """
    if payment_status == "paid":
        return SIGNAL_PAID
    if session_status == "expired":
        return SIGNAL_EXPIRED
    if payment_status == "unpaid":
        return SIGNAL_UNPAID
    return SIGNAL_OTHER


def is_terminal(state: OrderState) -> bool:
    return state.payment_status == PAYMENT_SUCCEEDED or state.status == ORDER_CANCELLED


def next_order_state(current: OrderState, signal: str) -> OrderState:
    """
    Pure transition function: (stored state, incoming signal) -> next state.

    Returns `current` unchanged when the signal does not move the order.
    """
    current = OrderState(*current)
    if is_terminal(current):
        return current

    if signal == SIGNAL_PAID:
        return PAID_STATE
    if signal in (SIGNAL_UNPAID, SIGNAL_EXPIRED):
        return FAILED_STATE
    return current


def can_cancel(current: OrderState) -> bool:
    """Shopper cancellation is only possible before any terminal outcome."""
    return not is_terminal(OrderState(*current))
