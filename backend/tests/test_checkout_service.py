"""
Checkout session creation tests.

Verifies:
- A pending order, its line items and the session link are written
- The processor receives the cart as priced by the ledger
- Processor failures leave a pending order with no session and surface the order id
- An order never gets a second checkout session
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from zoovio.errors import ConflictError, NotFoundError, PersistenceError, UpstreamError
from zoovio.models import Order, OrderItem, Payment
from zoovio.services import checkout_service
from zoovio.services.processor_adapter import to_minor_units

from conftest import CART_TOTAL, audit_actions, open_checkout


class TestCreateCheckoutSession:

    def test_creates_pending_order_with_session(self, db_session, processor, user_a):
        result = open_checkout(user_a, processor)

        order = db_session.get(Order, result["orderId"])
        assert result["sessionId"] == "cs_test_0001"
        assert result["sessionUrl"].startswith("https://checkout.stripe.test/")
        assert result["orderNumber"] == order.order_number
        assert order.order_number.startswith("ZOO-")
        assert order.user_id == user_a.id
        assert order.checkout_session_id == result["sessionId"]
        assert (order.status, order.payment_status) == ("pending", "pending")
        assert order.total_amount == CART_TOTAL
        assert order.currency == "USD"
        assert order.shipping_address["city"] == "Springfield"
        assert [item.product_id for item in order.items] == ["pet-001", "toy-042"]
        assert db_session.query(Payment).count() == 0

    def test_order_number_format(self, db_session, processor, user_a):
        number = open_checkout(user_a, processor)["orderNumber"]
        prefix, millis, suffix = number.split("-")
        assert prefix == "ZOO"
        assert millis.isdigit()
        assert len(suffix) == 9
        assert suffix.isalnum() and suffix.upper() == suffix

    def test_processor_receives_ledger_amounts(self, db_session, processor, user_a):
        result = open_checkout(user_a, processor)

        params = processor.created[0]
        assert params.order_id == result["orderId"]
        assert params.currency == "USD"
        assert params.customer_email == "alice@example.com"
        assert params.success_url == "http://shop.test/payment/success?session_id={CHECKOUT_SESSION_ID}"
        assert params.cancel_url == "http://shop.test/payment/cancel"
        assert params.metadata["orderId"] == result["orderId"]
        assert params.metadata["orderNumber"] == result["orderNumber"]
        assert params.metadata["userId"] == str(user_a.id)

        pet, toy = params.line_items
        assert pet.name == "Biscuit - Beagle"
        assert pet.description == "Pet ID: pet-001"
        assert pet.image == "https://img.test/biscuit.jpg"
        assert toy.name == "Squeaky Bone - toys"

        sent = sum(to_minor_units(i.unit_price * i.quantity, "USD") for i in params.line_items)
        assert sent == to_minor_units(CART_TOTAL, "USD") == 4498

    def test_audit_trail(self, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        assert audit_actions("order", result["orderId"]) == ["ORDER_CREATED", "CHECKOUT_SESSION_CREATED"]

    def test_processor_failure_keeps_pending_order_without_session(self, db_session, processor, user_a):
        processor.fail_next = UpstreamError("Payment service failed to create checkout session")

        with pytest.raises(UpstreamError) as exc_info:
            open_checkout(user_a, processor)

        order_id = exc_info.value.order_id
        order = db_session.get(Order, order_id)
        assert order is not None
        assert order.checkout_session_id is None
        assert (order.status, order.payment_status) == ("pending", "pending")
        assert db_session.query(Payment).count() == 0
        assert audit_actions("order", order_id) == ["ORDER_CREATED", "CHECKOUT_SESSION_FAILED"]

    def test_ledger_failure_leaves_no_partial_order(self, db_session, processor, user_a, monkeypatch):
        def broken_audit(**kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(checkout_service, "append_audit_entry", broken_audit)

        with pytest.raises(PersistenceError):
            open_checkout(user_a, processor)

        assert db_session.query(Order).count() == 0
        assert db_session.query(OrderItem).count() == 0
        assert processor.created == []

    def test_processor_auth_failure_is_flagged_fatal(self, db_session, processor, user_a):
        processor.fail_next = UpstreamError("Authentication with payment service failed", fatal=True)

        with pytest.raises(UpstreamError) as exc_info:
            open_checkout(user_a, processor)
        assert exc_info.value.fatal is True

    def test_concurrent_session_attach_conflicts(self, db_session, processor, user_a, monkeypatch):
        original = processor.create_checkout_session

        def racing_create(params):
            # Another writer links a session while our processor call is in flight
            db_session.query(Order).filter_by(id=params.order_id).update(
                {"checkout_session_id": "cs_other", "version_id": Order.version_id + 1},
                synchronize_session=False,
            )
            db_session.commit()
            return original(params)

        monkeypatch.setattr(processor, "create_checkout_session", racing_create)

        with pytest.raises(ConflictError):
            open_checkout(user_a, processor)

        order = db_session.query(Order).one()
        db_session.refresh(order)
        assert order.checkout_session_id == "cs_other"


class TestRetryCheckoutSession:

    def _failed_order(self, processor, user):
        processor.fail_next = UpstreamError("Payment service failed to create checkout session")
        with pytest.raises(UpstreamError) as exc_info:
            open_checkout(user, processor)
        return exc_info.value.order_id

    def test_retry_attaches_session(self, db_session, processor, user_a):
        order_id = self._failed_order(processor, user_a)

        result = checkout_service.retry_checkout_session(
            user_a, order_id, processor=processor, return_base_url="http://shop.test",
        )

        order = db_session.get(Order, order_id)
        assert result["orderId"] == order_id
        assert order.checkout_session_id == result["sessionId"]
        assert db_session.query(OrderItem).filter_by(order_id=order_id).count() == 2

    def test_retry_with_session_already_set_conflicts(self, db_session, processor, user_a):
        result = open_checkout(user_a, processor)
        with pytest.raises(ConflictError):
            checkout_service.retry_checkout_session(
                user_a, result["orderId"], processor=processor, return_base_url="http://shop.test",
            )
        assert len(processor.created) == 1

    def test_retry_for_another_users_order_is_not_found(self, db_session, processor, user_a, user_b):
        order_id = self._failed_order(processor, user_a)
        with pytest.raises(NotFoundError):
            checkout_service.retry_checkout_session(
                user_b, order_id, processor=processor, return_base_url="http://shop.test",
            )

    def test_retry_uses_stored_cart(self, db_session, processor, user_a):
        order_id = self._failed_order(processor, user_a)
        checkout_service.retry_checkout_session(
            user_a, order_id, processor=processor, return_base_url="http://shop.test/",
        )
        params = processor.created[-1]
        assert params.line_items[0].unit_price == Decimal("19.99")
        assert params.line_items[0].image == "https://img.test/biscuit.jpg"
        assert params.cancel_url == "http://shop.test/payment/cancel"

    def test_retry_after_transient_failure_uses_new_idempotency_key(self, db_session, processor, user_a):
        order_id = self._failed_order(processor, user_a)

        result = checkout_service.retry_checkout_session(
            user_a, order_id, processor=processor, return_base_url="http://localhost:5173",
        )

        assert processor.idempotency_keys == [
            f"zoovio-checkout-{order_id}-1",
            f"zoovio-checkout-{order_id}-2",
        ]
        order = db_session.get(Order, order_id)
        assert order.checkout_attempts == 2
        assert order.checkout_session_id == result["sessionId"]

