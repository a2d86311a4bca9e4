# Overview: Append-only audit trail writes for order and payment changes.

from __future__ import annotations

from ..extensions import db
from ..models import AuditEntry, Order, Payment
from zoovio.time_utils import utcnow

ACTOR_USER = "user"
ACTOR_PROCESSOR = "processor"
ACTOR_SYSTEM = "system"


def append_audit_entry(
    *,
    action: str,
    entity_type: str,
    entity_id: str | int | None,
    actor_type: str = ACTOR_USER,
    actor_user_id: int | None = None,
    before: dict | None = None,
    after: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditEntry:
    """
    Append an audit entry to the current transaction.

    - No domain logic here.
    - No deletes/updates of existing entries.
    - The caller commits (the entry lands with the change it describes).
    """
    entry = AuditEntry(
        action=action,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        actor_type=actor_type,
        actor_user_id=actor_user_id,
        before=before,
        after=after,
        ip_address=ip_address,
        user_agent=user_agent[:512] if user_agent else None,
        occurred_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def snapshot_order(order: Order) -> dict:
    return {
        "status": order.status,
        "payment_status": order.payment_status,
        "checkout_session_id": order.checkout_session_id,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
    }


def snapshot_payment(payment: Payment) -> dict:
    return {
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "checkout_session_id": payment.checkout_session_id,
        "payment_intent_id": payment.payment_intent_id,
        "failure_reason": payment.failure_reason,
    }
