"""
Webhook endpoint tests.

Payloads are signed with the Stripe-Signature scheme and verified by the
stripe SDK inside the real adapter.

Verifies:
- Completed sessions confirm orders; expired sessions cancel them
- Duplicate and out-of-order deliveries converge
- Unknown sessions and unrecognized event types are acknowledged as no-ops
- Bad signatures are rejected with nothing but an audit entry written
- Charge events move pending payments
"""

import time
from dataclasses import replace
from decimal import Decimal

from zoovio.models import AuditEntry, Order, Payment
from zoovio.services import checkout_service

from conftest import audit_actions, charge_event, open_checkout, session_event, sign_payload


WEBHOOK_URL = "/api/payments/webhook"


def deliver(client, payload: bytes, signature: str | None = "sign"):
    headers = {"Content-Type": "application/json"}
    if signature == "sign":
        headers["Stripe-Signature"] = sign_payload(payload)
    elif signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post(WEBHOOK_URL, data=payload, headers=headers)


def _order(db_session, order_id) -> Order:
    order = db_session.get(Order, order_id)
    db_session.refresh(order)
    return order


class TestSessionEvents:

    def test_completed_confirms_order(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        session = processor.pay(result["sessionId"], payment_intent_id="pi_hook")

        resp = deliver(client, session_event("checkout.session.completed", session))

        assert resp.status_code == 200
        assert resp.json == {"received": True}
        order = _order(db_session, result["orderId"])
        assert (order.status, order.payment_status) == ("confirmed", "succeeded")
        payment = db_session.query(Payment).one()
        assert payment.payment_intent_id == "pi_hook"
        assert payment.amount == Decimal("44.98")

        entry = db_session.query(AuditEntry).filter_by(action="ORDER_STATUS_CHANGED").one()
        assert entry.actor_type == "processor"
        assert entry.before["status"] == "pending"
        assert entry.after["status"] == "confirmed"

    def test_duplicate_delivery_is_idempotent(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        payload = session_event("checkout.session.completed", processor.pay(result["sessionId"]))

        assert deliver(client, payload).status_code == 200
        assert deliver(client, payload).status_code == 200

        assert db_session.query(Payment).count() == 1
        actions = audit_actions("order", result["orderId"])
        assert actions.count("ORDER_STATUS_CHANGED") == 1

    def test_expired_cancels_order(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        session = processor.lapse(result["sessionId"])

        resp = deliver(client, session_event("checkout.session.expired", session))

        assert resp.status_code == 200
        order = _order(db_session, result["orderId"])
        assert (order.status, order.payment_status) == ("cancelled", "failed")
        assert db_session.query(Payment).count() == 0

    def test_expiry_after_completion_is_ignored(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        paid = processor.pay(result["sessionId"])

        deliver(client, session_event("checkout.session.completed", paid, event_id="evt_a"))
        deliver(client, session_event("checkout.session.expired", paid, event_id="evt_b"))

        order = _order(db_session, result["orderId"])
        assert (order.status, order.payment_status) == ("confirmed", "succeeded")

    def test_webhook_and_verification_converge(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        session = processor.pay(result["sessionId"])

        checkout_service.verify_session(user_a, result["sessionId"], processor=processor)
        deliver(client, session_event("checkout.session.completed", session))

        order = _order(db_session, result["orderId"])
        assert (order.status, order.payment_status) == ("confirmed", "succeeded")
        assert db_session.query(Payment).count() == 1

    def test_async_payment_succeeded(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        session = processor.pay(result["sessionId"])

        resp = deliver(client, session_event("checkout.session.async_payment_succeeded", session))

        assert resp.status_code == 200
        assert _order(db_session, result["orderId"]).status == "confirmed"

    def test_unknown_session_is_acknowledged(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        session = processor.pay(result["sessionId"])
        stranger = replace(session, id="cs_not_ours")

        resp = deliver(client, session_event("checkout.session.completed", stranger))

        assert resp.status_code == 200
        assert _order(db_session, result["orderId"]).status == "pending"
        assert db_session.query(Payment).count() == 0


class TestUnrecognizedEvents:

    def test_unrecognized_type_is_acknowledged(self, client, db_session, processor):
        payload = charge_event("customer.created", "cus_123")
        before = db_session.query(AuditEntry).count()

        resp = deliver(client, payload)

        assert resp.status_code == 200
        assert db_session.query(AuditEntry).count() == before


class TestSignatures:

    def test_missing_signature(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        payload = session_event("checkout.session.completed", processor.pay(result["sessionId"]))

        resp = deliver(client, payload, signature=None)

        assert resp.status_code == 400
        assert _order(db_session, result["orderId"]).status == "pending"

    def test_bad_signature_changes_nothing_but_audit(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        payload = session_event("checkout.session.completed", processor.pay(result["sessionId"]))
        audit_before = db_session.query(AuditEntry).count()

        resp = deliver(client, payload, signature=sign_payload(payload, secret="whsec_attacker"))

        assert resp.status_code == 400
        assert "Webhook Error" in resp.json["error"]
        assert _order(db_session, result["orderId"]).status == "pending"
        assert db_session.query(Payment).count() == 0
        assert db_session.query(AuditEntry).count() == audit_before + 1
        rejection = db_session.query(AuditEntry).order_by(AuditEntry.id.desc()).first()
        assert rejection.action == "WEBHOOK_SIGNATURE_REJECTED"
        assert rejection.actor_type == "processor"

    def test_undecodable_body_is_audited_as_rejected(self, client, db_session, processor):
        resp = deliver(client, b"\xff\xfe\x00garbage", signature=f"t={int(time.time())},v1=deadbeef")

        assert resp.status_code == 400
        rejection = db_session.query(AuditEntry).order_by(AuditEntry.id.desc()).first()
        assert rejection.action == "WEBHOOK_SIGNATURE_REJECTED"

    def test_signature_over_different_body(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        paid = session_event("checkout.session.completed", processor.pay(result["sessionId"]))
        header = sign_payload(b'{"id": "evt_other"}')

        resp = deliver(client, paid, signature=header)

        assert resp.status_code == 400
        assert db_session.query(Payment).count() == 0


class TestChargeEvents:

    def _pending_payment(self, db_session, user, intent_id):
        payment = Payment(
            user_id=user.id,
            payment_intent_id=intent_id,
            amount=Decimal("12.50"),
            currency="USD",
            status="pending",
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    def test_charge_succeeded_moves_pending_payment(self, client, db_session, processor, user_a):
        payment = self._pending_payment(db_session, user_a, "pi_pending")

        resp = deliver(client, charge_event("payment_intent.succeeded", "pi_pending"))

        assert resp.status_code == 200
        db_session.refresh(payment)
        assert payment.status == "succeeded"
        assert payment.processed_at is not None
        assert audit_actions("payment", payment.id) == ["PAYMENT_SUCCEEDED"]

    def test_charge_failed_records_reason(self, client, db_session, processor, user_a):
        payment = self._pending_payment(db_session, user_a, "pi_declined")

        resp = deliver(client, charge_event("payment_intent.payment_failed", "pi_declined", "Your card was declined."))

        assert resp.status_code == 200
        db_session.refresh(payment)
        assert payment.status == "failed"
        assert payment.failure_reason == "Your card was declined."

    def test_charge_failure_never_undoes_success(self, client, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        session = processor.pay(result["sessionId"], payment_intent_id="pi_done")
        deliver(client, session_event("checkout.session.completed", session))

        resp = deliver(client, charge_event("payment_intent.payment_failed", "pi_done", "late failure"))

        assert resp.status_code == 200
        payment = db_session.query(Payment).one()
        db_session.refresh(payment)
        assert payment.status == "succeeded"
        assert payment.failure_reason is None

    def test_unknown_payment_intent_is_acknowledged(self, client, db_session, processor):
        resp = deliver(client, charge_event("payment_intent.succeeded", "pi_unknown"))
        assert resp.status_code == 200
        assert db_session.query(Payment).count() == 0


def test_webhook_first_then_verification(client, db_session, processor, user_a, headers_a):
    result = open_checkout(user_a, processor)
    session = processor.pay(result["sessionId"])

    deliver(client, session_event("checkout.session.completed", session))
    resp = client.get(f"/api/payments/verify-session/{result['sessionId']}", headers=headers_a)

    assert resp.status_code == 200
    assert (resp.json["status"], resp.json["paymentStatus"]) == ("confirmed", "succeeded")
    assert db_session.query(Payment).count() == 1
