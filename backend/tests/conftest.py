"""
Pytest fixtures for Zoovio backend tests.

Provides test database setup, a fake payment processor, signed webhook
payloads, users and a test client.
"""

import hashlib
import hmac
import json
import time
from dataclasses import replace
from decimal import Decimal

import pytest
from zoovio import create_app
from zoovio.errors import ConflictError, NotFoundError
from zoovio.extensions import db
from zoovio.models import AuditEntry
from zoovio.services import checkout_service, session_service
from zoovio.services.auth_service import create_user
from zoovio.services.processor_adapter import CheckoutSession, StripeProcessor, to_minor_units
from zoovio.validation import parse_checkout_session_request


TEST_WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessor(StripeProcessor):
    """
    Stripe adapter with the network calls replaced by an in-memory session store.

    Webhook verification (construct_event) is inherited, so signed payloads go
    through the stripe SDK exactly as in production.
    """

    def __init__(self):
        super().__init__("sk_test_fake", TEST_WEBHOOK_SECRET)
        self.reset()

    def reset(self):
        self.sessions = {}
        self.created = []
        self.expired = []
        self.fail_next = None
        self.retrieve_calls = 0
        self.idempotency_keys = []
        self._replies = {}
        self._counter = 0

    def create_checkout_session(self, params):
        # Stripe stores the first reply per idempotency key, failures included
        key = params.idempotency_key
        self.idempotency_keys.append(key)
        if key in self._replies:
            reply = self._replies[key]
            if isinstance(reply, Exception):
                raise reply
            return reply
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            self._replies[key] = exc
            raise exc
        self._counter += 1
        self.created.append(params)
        amount = sum(to_minor_units(i.unit_price * i.quantity, params.currency) for i in params.line_items)
        session = CheckoutSession(
            id=f"cs_test_{self._counter:04d}",
            url=f"https://checkout.stripe.test/c/pay/cs_test_{self._counter:04d}",
            status="open",
            payment_status="unpaid",
            customer_email=params.customer_email,
            amount_total=amount,
            currency=params.currency.upper(),
            client_reference_id=params.order_id,
        )
        self.sessions[session.id] = session
        self._replies[key] = session
        return session

    def retrieve_session(self, session_id):
        self.retrieve_calls += 1
        if session_id not in self.sessions:
            raise NotFoundError("Checkout session not found")
        return self.sessions[session_id]

    def expire_session(self, session_id):
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError("Checkout session not found")
        if session.status != "open":
            raise ConflictError("Checkout session can no longer be cancelled")
        session = replace(session, status="expired")
        self.sessions[session_id] = session
        self.expired.append(session_id)
        return session

    # Test helpers: move a session the way the hosted page would

    def pay(self, session_id, payment_intent_id=None):
        session = replace(
            self.sessions[session_id],
            status="complete",
            payment_status="paid",
            payment_intent_id=payment_intent_id or f"pi_{session_id}",
        )
        self.sessions[session_id] = session
        return session

    def lapse(self, session_id):
        session = replace(self.sessions[session_id], status="expired", payment_status="unpaid")
        self.sessions[session_id] = session
        return session


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(
        test_config={
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'BCRYPT_ROUNDS': 4,
            'FRONTEND_BASE_URL': 'http://shop.test',
            'CORS_ORIGINS': ('http://localhost:5173',),
            'SUPPORTED_CURRENCIES': ('usd', 'eur', 'gbp'),
        },
        processor=FakeProcessor(),
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def processor(app, db_session):
    """The app's fake processor, emptied for this test."""
    fake = app.extensions["payment_processor"]
    fake.reset()
    return fake


@pytest.fixture(scope='function')
def user_a(db_session):
    return create_user("alice@example.com", "Password123!", "Alice Adams")


@pytest.fixture(scope='function')
def user_b(db_session):
    return create_user("bob@example.com", "Password123!", "Bob Brown")


@pytest.fixture(scope='function')
def headers_a(user_a):
    _, token = session_service.create_session(user_id=user_a.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def headers_b(user_b):
    _, token = session_service.create_session(user_id=user_b.id)
    return auth_headers(token)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def cart_payload(**overrides) -> dict:
    """A valid create-checkout-session body: 2 x 19.99 + 1 x 5.00 = 44.98 USD."""
    payload = {
        "currency": "usd",
        "customerName": "Alice Adams",
        "customerEmail": "alice@example.com",
        "cartItems": [
            {
                "id": "pet-001",
                "name": "Biscuit",
                "category": "dogs",
                "breed": "Beagle",
                "price": 19.99,
                "quantity": 2,
                "images": ["https://img.test/biscuit.jpg"],
            },
            {"id": "toy-042", "name": "Squeaky Bone", "category": "toys", "price": "5.00"},
        ],
        "shippingAddress": {"line1": "1 Main St", "city": "Springfield", "country": "US"},
    }
    payload.update(overrides)
    return payload


CART_TOTAL = Decimal("44.98")


def sign_payload(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<payload>")."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def session_event(event_type: str, session: CheckoutSession, event_id: str = "evt_test_1") -> bytes:
    """Serialized processor event wrapping a checkout session."""
    obj = {
        "id": session.id,
        "object": "checkout.session",
        "status": session.status,
        "payment_status": session.payment_status,
        "customer_email": session.customer_email,
        "payment_intent": session.payment_intent_id,
        "amount_total": session.amount_total,
        "currency": session.currency.lower() if session.currency else None,
        "client_reference_id": session.client_reference_id,
    }
    return _event(event_type, obj, event_id)


def charge_event(event_type: str, payment_intent_id: str, failure_message: str | None = None,
                 event_id: str = "evt_test_2") -> bytes:
    obj = {"id": payment_intent_id, "object": "payment_intent", "status": "succeeded"}
    if failure_message:
        obj["status"] = "requires_payment_method"
        obj["last_payment_error"] = {"message": failure_message}
    return _event(event_type, obj, event_id)


def _event(event_type: str, obj: dict, event_id: str) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


def open_checkout(user, processor, **overrides) -> dict:
    """Create an order and its checkout session through the broker."""
    checkout = parse_checkout_session_request(cart_payload(**overrides), ("usd", "eur", "gbp"))
    return checkout_service.create_checkout_session(
        user,
        checkout,
        processor=processor,
        return_base_url="http://shop.test",
    )


def audit_actions(entity_type: str, entity_id) -> list[str]:
    entries = (
        db.session.query(AuditEntry)
        .filter_by(entity_type=entity_type, entity_id=str(entity_id))
        .order_by(AuditEntry.id)
        .all()
    )
    return [entry.action for entry in entries]
