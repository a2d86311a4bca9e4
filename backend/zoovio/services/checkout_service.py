# Overview: Checkout session broker; opens processor sessions for new orders and reconciles processor outcomes into the ledger.

"""
Checkout Session Broker

================================================================================
FLOWS
================================================================================

CREATE:
    1. Transaction: pending order + line items + ORDER_CREATED audit.
    2. Processor call (outside any transaction). On failure the order stays
       pending with no session; CHECKOUT_SESSION_FAILED is audited.
    3. Transaction: attach the session id (once) + CHECKOUT_SESSION_CREATED.

RECONCILE (verification and webhook share this path):
    - Lock the order, reduce the processor session to a signal, apply
      order_lifecycle.next_order_state(), record the payment on "paid".
    - The unique payment.checkout_session_id and the order version column
      are the only synchronization. Whoever loses a race rolls back and
      reads the winner's result; both computed the same state.

WEBHOOK:
    - Signature is checked before anything is parsed or written. A rejected
      delivery leaves only a WEBHOOK_SIGNATURE_REJECTED audit entry.
    - Unknown event types and sessions with no order are acknowledged as no-ops.

Nothing here retries. Processor and ledger failures surface to the caller.
================================================================================
"""

from __future__ import annotations

import dataclasses

from flask import current_app

from ..extensions import db
from ..errors import ConflictError, InvalidSignatureError, NotFoundError, PersistenceError, UpstreamError
from ..models import Order, Payment, User
from ..validation import CheckoutRequest
from . import order_service, payment_service
from .audit_service import (
    ACTOR_PROCESSOR,
    ACTOR_USER,
    append_audit_entry,
    snapshot_order,
    snapshot_payment,
)
from .concurrency import lock_for_update, run_in_transaction
from .order_lifecycle import (
    ORDER_CANCELLED,
    SIGNAL_OTHER,
    SIGNAL_PAID,
    can_cancel,
    is_terminal,
    next_order_state,
    signal_for_session,
)
from .processor_adapter import (
    ChargeOutcome,
    CheckoutLineItem,
    CheckoutSession,
    CheckoutSessionParams,
    ProcessorAdapter,
    WebhookEventKind,
    to_minor_units,
)


SOURCE_VERIFICATION = "verification"
SOURCE_WEBHOOK = "webhook"
SOURCE_MANUAL = "manual"

# Webhook outcomes (logged; the processor only needs the acknowledgement)
OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_UNMATCHED = "unmatched"
OUTCOME_IGNORED = "ignored"


# =============================================================================
# SESSION CREATION
# =============================================================================

def create_checkout_session(
    user: User,
    checkout: CheckoutRequest,
    *,
    processor: ProcessorAdapter,
    return_base_url: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """
    Create a pending order for the cart and open a hosted checkout session.

    Returns:
        {"sessionId", "sessionUrl", "orderId", "orderNumber"}

    Raises:
        UpstreamError: processor call failed; exc.order_id names the pending order
        ConflictError: a session was attached concurrently
        PersistenceError: ledger write failed
    """
    user_id = user.id

    def _create():
        order = order_service.create_order(user_id, checkout)
        append_audit_entry(
            action="ORDER_CREATED",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=user_id,
            after={**snapshot_order(order), "order_number": order.order_number, "item_count": len(order.items)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return order

    order = run_in_transaction(_create, description="order creation")
    current_app.logger.info(
        "Order %s (%s) created for user %s: %s %s",
        order.order_number, order.id, user_id, order.total_amount, order.currency,
    )

    return _open_session(
        order,
        processor=processor,
        return_base_url=return_base_url,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def retry_checkout_session(
    user: User,
    order_id: str,
    *,
    processor: ProcessorAdapter,
    return_base_url: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """
    Open a session for an existing pending order whose first attempt failed.

    Another user's order is reported as missing.
    """
    order = order_service.get_order(order_id)
    if order is None or order.user_id != user.id:
        raise NotFoundError("Order not found")
    if order.checkout_session_id is not None:
        raise ConflictError("Order already has a checkout session")
    if is_terminal(order_service.current_state(order)):
        raise ConflictError("Order is no longer awaiting payment")

    return _open_session(
        order,
        processor=processor,
        return_base_url=return_base_url,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def build_session_params(order: Order, return_base_url: str, attempt: int = 1) -> CheckoutSessionParams:
    base = return_base_url.rstrip("/")
    line_items = []
    for item in order.items:
        label = item.breed or item.category
        line_items.append(CheckoutLineItem(
            name=f"{item.product_name} - {label}" if label else item.product_name,
            description=f"Pet ID: {item.product_id}",
            unit_price=item.unit_price,
            quantity=item.quantity,
            image=item.image_url,
        ))

    return CheckoutSessionParams(
        order_id=order.id,
        currency=order.currency,
        line_items=line_items,
        # {CHECKOUT_SESSION_ID} is filled in by the processor
        success_url=f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}/payment/cancel",
        customer_email=order.customer_email,
        metadata={
            "orderId": order.id,
            "orderNumber": order.order_number,
            "userId": str(order.user_id),
            "customerName": order.customer_name or "",
            "customerEmail": order.customer_email or "",
        },
        attempt=attempt,
    )


def _open_session(
    order: Order,
    *,
    processor: ProcessorAdapter,
    return_base_url: str,
    ip_address: str | None,
    user_agent: str | None,
) -> dict:
    order_id = order.id
    order_number = order.order_number
    user_id = order.user_id
    attempt = _claim_checkout_attempt(order_id)
    params = build_session_params(order, return_base_url, attempt)

    try:
        session = processor.create_checkout_session(params)
    except UpstreamError as exc:
        exc.order_id = order_id
        if exc.fatal:
            current_app.logger.critical("Payment processor rejected our credentials: %s", exc.message)
        else:
            current_app.logger.error("Checkout session creation failed for order %s: %s", order_id, exc.message)
        _record_session_failure(order_id, user_id, exc, ip_address=ip_address, user_agent=user_agent)
        raise

    def _attach():
        locked = order_service.lock_order(order_id)
        before = snapshot_order(locked)
        order_service.attach_checkout_session(locked, session.id)
        append_audit_entry(
            action="CHECKOUT_SESSION_CREATED",
            entity_type="order",
            entity_id=order_id,
            actor_user_id=user_id,
            before=before,
            after=snapshot_order(locked),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def _attach_conflict(exc):
        current_app.logger.warning("Order %s gained a checkout session concurrently; discarding %s", order_id, session.id)
        raise ConflictError("Order already has a checkout session") from exc

    run_in_transaction(_attach, on_conflict=_attach_conflict, description="checkout session attachment")
    current_app.logger.info("Checkout session %s opened for order %s", session.id, order_id)

    return {
        "sessionId": session.id,
        "sessionUrl": session.url,
        "orderId": order_id,
        "orderNumber": order_number,
    }


def _claim_checkout_attempt(order_id: str) -> int:
    def _claim():
        return order_service.next_checkout_attempt(order_service.lock_order(order_id))

    return run_in_transaction(_claim, description="checkout attempt claim")


def _record_session_failure(order_id, user_id, exc: UpstreamError, *, ip_address, user_agent) -> None:
    def _audit():
        append_audit_entry(
            action="CHECKOUT_SESSION_FAILED",
            entity_type="order",
            entity_id=order_id,
            actor_user_id=user_id,
            after={"error": exc.message, "fatal": exc.fatal},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    try:
        run_in_transaction(_audit, description="checkout failure audit")
    except PersistenceError:
        # The processor error is the one the caller needs to see
        current_app.logger.error("Could not audit checkout failure for order %s", order_id)


# =============================================================================
# RECONCILIATION
# =============================================================================

def verify_session(
    user: User,
    session_id: str,
    *,
    processor: ProcessorAdapter,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """
    Shopper-initiated check of a checkout session after the redirect back.

    The order must belong to the caller; otherwise it is reported as missing
    and the processor is never contacted.
    """
    order = order_service.find_order_by_session(session_id, user_id=user.id)
    if order is None:
        raise NotFoundError("Order not found")

    session = processor.retrieve_session(session_id)
    order = reconcile_session(
        order.id,
        session,
        source=SOURCE_VERIFICATION,
        actor_type=ACTOR_USER,
        actor_user_id=user.id,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "amount": str(order.total_amount),
        "currency": order.currency,
        "customerEmail": session.customer_email or order.customer_email,
    }


def reconcile_session(
    order_id: str,
    session: CheckoutSession,
    *,
    source: str,
    actor_type: str,
    actor_user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Order:
    """
    Fold one processor session snapshot into the ledger. Idempotent.

    Returns the order as stored after the call (possibly written by a
    concurrent reconciliation).
    """
    signal = signal_for_session(session.payment_status, session.status)
    audit_context = {
        "actor_type": actor_type,
        "actor_user_id": actor_user_id,
        "ip_address": ip_address,
        "user_agent": user_agent,
    }

    def _apply():
        order = order_service.lock_order(order_id)
        current = order_service.current_state(order)
        target = next_order_state(current, signal)

        if target != current:
            before = snapshot_order(order)
            order_service.update_order_status(order, target)
            append_audit_entry(
                action="ORDER_STATUS_CHANGED",
                entity_type="order",
                entity_id=order_id,
                before=before,
                after={**snapshot_order(order), "signal": signal, "source": source},
                **audit_context,
            )
            current_app.logger.info(
                "Order %s moved %s/%s -> %s/%s on %s signal (%s)",
                order_id, current.status, current.payment_status,
                target.status, target.payment_status, signal, source,
            )
        elif signal != SIGNAL_OTHER:
            current_app.logger.info("Order %s already %s/%s; %s signal is a no-op", order_id, *current, signal)

        if signal == SIGNAL_PAID:
            _record_paid_session(order, session, audit_context)

        if source == SOURCE_VERIFICATION:
            append_audit_entry(
                action="PAYMENT_VERIFIED",
                entity_type="order",
                entity_id=order_id,
                after={
                    "checkout_session_id": session.id,
                    "processor_status": session.status,
                    "processor_payment_status": session.payment_status,
                    "status": order.status,
                    "payment_status": order.payment_status,
                },
                **audit_context,
            )
        return order

    def _lost_race(exc):
        current_app.logger.info(
            "Reconciliation of order %s lost a race (%s); keeping the stored outcome",
            order_id, type(exc).__name__,
        )
        return order_service.get_order(order_id)

    return run_in_transaction(_apply, on_conflict=_lost_race, description="session reconciliation")


def _record_paid_session(order: Order, session: CheckoutSession, audit_context: dict) -> None:
    if session.amount_total is not None and (session.currency or order.currency) == order.currency:
        expected = to_minor_units(order.total_amount, order.currency)
        if session.amount_total != expected:
            current_app.logger.warning(
                "Session %s amount %s does not match order %s total %s (%s minor units)",
                session.id, session.amount_total, order.id, order.total_amount, expected,
            )

    if order.status == ORDER_CANCELLED:
        current_app.logger.warning(
            "Session %s reports paid but order %s is cancelled; recording the payment for follow-up",
            session.id, order.id,
        )

    payment, created = payment_service.create_payment(order, session)
    if created:
        append_audit_entry(
            action="PAYMENT_RECORDED",
            entity_type="payment",
            entity_id=payment.id,
            after={**snapshot_payment(payment), "order_id": order.id},
            **audit_context,
        )
        current_app.logger.info("Payment %s recorded for order %s (session %s)", payment.id, order.id, session.id)


# =============================================================================
# WEBHOOKS
# =============================================================================

def handle_webhook(
    payload: bytes,
    signature: str | None,
    *,
    processor: ProcessorAdapter,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> str:
    """
    Authenticate and apply one processor notification.

    Returns the outcome (applied, noop, unmatched, ignored).

    Raises:
        InvalidSignatureError: missing or bad signature; nothing but the
            rejection audit entry is written
        ValidationError: signed payload is not a parseable event
    """
    try:
        event = processor.construct_event(payload, signature)
    except InvalidSignatureError as exc:
        current_app.logger.warning("Rejected webhook from %s: %s", ip_address, exc.message)
        _record_signature_rejection(exc, ip_address=ip_address, user_agent=user_agent)
        raise

    if event.kind.is_session_event and event.session is not None:
        outcome = _handle_session_event(event.kind, event.session, ip_address=ip_address, user_agent=user_agent)
    elif event.kind.is_charge_event and event.charge is not None:
        outcome = apply_charge_outcome(
            event.charge,
            succeeded=event.kind == WebhookEventKind.CHARGE_SUCCEEDED,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    else:
        outcome = OUTCOME_IGNORED

    current_app.logger.info("Webhook %s (%s): %s", event.id, event.type, outcome)
    return outcome


def _handle_session_event(kind: WebhookEventKind, session: CheckoutSession, *, ip_address, user_agent) -> str:
    if kind == WebhookEventKind.SESSION_EXPIRED and session.status != "expired":
        session = dataclasses.replace(session, status="expired")

    order = order_service.find_order_by_session(session.id)
    if order is None:
        current_app.logger.info("No order for checkout session %s; acknowledging", session.id)
        return OUTCOME_UNMATCHED

    before = order_service.current_state(order)
    had_payment = payment_service.find_payment_by_session(session.id) is not None

    order = reconcile_session(
        order.id,
        session,
        source=SOURCE_WEBHOOK,
        actor_type=ACTOR_PROCESSOR,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    changed = order_service.current_state(order) != before
    recorded = not had_payment and payment_service.find_payment_by_session(session.id) is not None
    return OUTCOME_APPLIED if changed or recorded else OUTCOME_NOOP


def apply_charge_outcome(
    charge: ChargeOutcome,
    *,
    succeeded: bool,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> str:
    """
    Move a pending payment to succeeded or failed from a charge notification.

    Orders are driven by session events only; charge events touch payments.
    """
    payment = payment_service.find_payment_by_intent(charge.payment_intent_id)
    if payment is None:
        current_app.logger.info("No payment for payment intent %s; acknowledging", charge.payment_intent_id)
        return OUTCOME_UNMATCHED

    payment_id = payment.id

    def _apply():
        locked = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).one()
        before = snapshot_payment(locked)
        if succeeded:
            changed = payment_service.mark_payment_succeeded(locked)
        else:
            changed = payment_service.mark_payment_failed(locked, charge.failure_reason)
        if changed:
            append_audit_entry(
                action="PAYMENT_SUCCEEDED" if succeeded else "PAYMENT_FAILED",
                entity_type="payment",
                entity_id=payment_id,
                actor_type=ACTOR_PROCESSOR,
                before=before,
                after=snapshot_payment(locked),
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return changed

    def _lost_race(exc):
        current_app.logger.info("Payment %s changed concurrently (%s)", payment_id, type(exc).__name__)
        return False

    changed = run_in_transaction(_apply, on_conflict=_lost_race, description="charge outcome")
    return OUTCOME_APPLIED if changed else OUTCOME_NOOP


def _record_signature_rejection(exc: InvalidSignatureError, *, ip_address, user_agent) -> None:
    def _audit():
        append_audit_entry(
            action="WEBHOOK_SIGNATURE_REJECTED",
            entity_type="webhook",
            entity_id=None,
            actor_type=ACTOR_PROCESSOR,
            after={"reason": exc.message},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    try:
        run_in_transaction(_audit, description="webhook rejection audit")
    except PersistenceError:
        current_app.logger.error("Could not audit rejected webhook from %s", ip_address)


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_order_for_user(
    user: User,
    order_id: str,
    *,
    processor: ProcessorAdapter,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Order:
    """
    Shopper cancels a pending order.

    An open checkout session is expired at the processor first, so the payer
    can no longer complete it. A session that already completed cannot be
    expired and the cancellation is refused with ConflictError.
    """
    order = order_service.get_order_for_user(order_id, user.id)
    if not can_cancel(order_service.current_state(order)):
        raise ConflictError("Order can no longer be cancelled")

    if order.checkout_session_id:
        try:
            processor.expire_session(order.checkout_session_id)
        except NotFoundError:
            current_app.logger.warning(
                "Checkout session %s for order %s is unknown to the processor; cancelling locally",
                order.checkout_session_id, order_id,
            )

    def _cancel():
        # A webhook may have settled the order while the processor call ran
        locked = order_service.lock_order(order_id)
        before = snapshot_order(locked)
        order_service.cancel_order(locked)
        append_audit_entry(
            action="ORDER_CANCELLED",
            entity_type="order",
            entity_id=order_id,
            actor_user_id=user.id,
            before=before,
            after=snapshot_order(locked),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return locked

    order = run_in_transaction(_cancel, description="order cancellation")
    current_app.logger.info("Order %s cancelled by user %s", order_id, user.id)
    return order
