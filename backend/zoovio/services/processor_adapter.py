# Overview: Payment processor adapter; translates checkout intents into Stripe API calls and verifies inbound webhooks.

"""
Payment Processor Adapter

The checkout broker never talks to Stripe directly. It receives a
ProcessorAdapter (built once in create_app and stored on
app.extensions["payment_processor"]) and exchanges plain dataclasses with it.

AMOUNTS:
- The ledger keeps Decimal amounts in major units.
- Conversion to minor units (cents) happens only here, rounding half-up,
  and is never written back to the ledger.

ERRORS:
- stripe.AuthenticationError -> UpstreamError(fatal=True)
- missing session (HTTP 404) -> NotFoundError
- any other stripe.StripeError (timeouts, 5xx) -> UpstreamError
- bad or missing webhook signature -> InvalidSignatureError
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

import stripe
from flask import current_app

from ..errors import (
    ConfigurationError,
    ConflictError,
    InvalidSignatureError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)


# Decimal places per currency; everything we sell in uses cents
MINOR_UNIT_EXPONENTS = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "AUD": 2,
    "CNY": 2,
    "EGP": 2,
}

SHIPPING_COUNTRIES = ("US", "CA", "GB", "AU", "DE", "FR", "EG", "CN")


def to_minor_units(amount: Decimal, currency: str) -> int:
    """19.99 USD -> 1999. Rounds half-up to the nearest minor unit."""
    exponent = MINOR_UNIT_EXPONENTS.get(currency.upper(), 2)
    scaled = Decimal(amount) * (Decimal(10) ** exponent)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class WebhookEventKind(str, Enum):
    """Processor events the broker understands. UNRECOGNIZED is an explicit no-op."""
    SESSION_COMPLETED = "checkout.session.completed"
    SESSION_EXPIRED = "checkout.session.expired"
    SESSION_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
    SESSION_ASYNC_FAILED = "checkout.session.async_payment_failed"
    CHARGE_SUCCEEDED = "payment_intent.succeeded"
    CHARGE_FAILED = "payment_intent.payment_failed"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def from_type(cls, event_type: str | None) -> "WebhookEventKind":
        for kind in cls:
            if kind.value == event_type:
                return kind
        return cls.UNRECOGNIZED

    @property
    def is_session_event(self) -> bool:
        return self.value.startswith("checkout.session.")

    @property
    def is_charge_event(self) -> bool:
        return self in (WebhookEventKind.CHARGE_SUCCEEDED, WebhookEventKind.CHARGE_FAILED)


@dataclass(frozen=True)
class CheckoutLineItem:
    name: str
    description: str
    unit_price: Decimal
    quantity: int
    image: str | None = None


@dataclass(frozen=True)
class CheckoutSessionParams:
    order_id: str
    currency: str
    line_items: list[CheckoutLineItem]
    success_url: str
    cancel_url: str
    customer_email: str
    metadata: dict[str, str] = field(default_factory=dict)
    attempt: int = 1

    @property
    def idempotency_key(self) -> str:
        # Stripe replays the stored response for a reused key, errors included
        return f"zoovio-checkout-{self.order_id}-{self.attempt}"


@dataclass(frozen=True)
class CheckoutSession:
    """Processor-side snapshot of one checkout session."""
    id: str
    url: str | None = None
    status: str | None = None
    payment_status: str | None = None
    customer_email: str | None = None
    payment_intent_id: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    client_reference_id: str | None = None


@dataclass(frozen=True)
class ChargeOutcome:
    payment_intent_id: str
    status: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class ProcessorEvent:
    id: str | None
    type: str
    kind: WebhookEventKind
    session: CheckoutSession | None = None
    charge: ChargeOutcome | None = None


class ProcessorAdapter:
    """Interface the checkout broker depends on."""

    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        raise NotImplementedError

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        raise NotImplementedError

    def expire_session(self, session_id: str) -> CheckoutSession:
        raise NotImplementedError

    def construct_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        raise NotImplementedError


class StripeProcessor(ProcessorAdapter):
    """ProcessorAdapter backed by the Stripe Checkout API."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        api_version: str | None = None,
        timeout: float = 10.0,
    ):
        if not api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        if not webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

        self._webhook_secret = webhook_secret
        client_options = {
            # Bounded outbound calls; retries are the caller's decision
            "http_client": stripe.RequestsClient(timeout=timeout),
            "max_network_retries": 0,
        }
        if api_version:
            client_options["stripe_version"] = api_version
        self._client = stripe.StripeClient(api_key, **client_options)

    @classmethod
    def from_config(cls, config) -> "StripeProcessor":
        return cls(
            config.get("STRIPE_SECRET_KEY"),
            config.get("STRIPE_WEBHOOK_SECRET"),
            api_version=config.get("STRIPE_API_VERSION"),
            timeout=float(config.get("STRIPE_TIMEOUT_SECONDS", 10)),
        )

    # ------------------------------------------------------------------
    # Checkout sessions
    # ------------------------------------------------------------------

    def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSession:
        currency = params.currency.lower()
        line_items = []
        for item in params.line_items:
            product_data = {"name": item.name, "description": item.description}
            if item.image:
                product_data["images"] = [item.image]
            line_items.append({
                "price_data": {
                    "currency": currency,
                    "product_data": product_data,
                    "unit_amount": to_minor_units(item.unit_price, params.currency),
                },
                "quantity": item.quantity,
            })

        request = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": line_items,
            "success_url": params.success_url,
            "cancel_url": params.cancel_url,
            "customer_email": params.customer_email,
            "client_reference_id": params.order_id,
            "metadata": dict(params.metadata),
            "billing_address_collection": "required",
            "shipping_address_collection": {"allowed_countries": list(SHIPPING_COUNTRIES)},
        }
        options = {"idempotency_key": params.idempotency_key}

        try:
            session = self._client.checkout.sessions.create(params=request, options=options)
        except stripe.StripeError as exc:
            raise self._upstream_error("create checkout session", exc) from exc
        return session_from_stripe(session)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        try:
            session = self._client.checkout.sessions.retrieve(session_id)
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404:
                raise NotFoundError("Checkout session not found") from exc
            raise self._upstream_error("retrieve checkout session", exc) from exc
        except stripe.StripeError as exc:
            raise self._upstream_error("retrieve checkout session", exc) from exc
        return session_from_stripe(session)

    def expire_session(self, session_id: str) -> CheckoutSession:
        try:
            session = self._client.checkout.sessions.expire(session_id)
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404:
                raise NotFoundError("Checkout session not found") from exc
            # Only open sessions can be expired
            raise ConflictError("Checkout session can no longer be cancelled") from exc
        except stripe.StripeError as exc:
            raise self._upstream_error("expire checkout session", exc) from exc
        return session_from_stripe(session)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        """Verify the Stripe-Signature header over the raw body, then parse."""
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError("Webhook signature verification failed") from exc
        except UnicodeDecodeError as exc:
            # Decoded before the signature check; no signed event can be non-UTF-8
            raise InvalidSignatureError("Webhook signature verification failed") from exc
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload") from exc
        return event_from_stripe(event)

    def _upstream_error(self, description: str, exc: stripe.StripeError) -> UpstreamError:
        if isinstance(exc, stripe.AuthenticationError):
            return UpstreamError("Authentication with payment service failed", fatal=True)
        return UpstreamError(f"Payment service failed to {description}")


def session_from_stripe(obj) -> CheckoutSession:
    details = obj.get("customer_details") or {}
    intent = obj.get("payment_intent")
    if intent is not None and not isinstance(intent, str):
        intent = intent.get("id")
    currency = obj.get("currency")
    return CheckoutSession(
        id=obj.get("id"),
        url=obj.get("url"),
        status=obj.get("status"),
        payment_status=obj.get("payment_status"),
        customer_email=details.get("email") or obj.get("customer_email"),
        payment_intent_id=intent,
        amount_total=obj.get("amount_total"),
        currency=currency.upper() if currency else None,
        client_reference_id=obj.get("client_reference_id"),
    )


def charge_from_stripe(obj) -> ChargeOutcome:
    last_error = obj.get("last_payment_error") or {}
    return ChargeOutcome(
        payment_intent_id=obj.get("id"),
        status=obj.get("status"),
        failure_reason=last_error.get("message"),
    )


def event_from_stripe(event) -> ProcessorEvent:
    event_type = event.get("type") or ""
    kind = WebhookEventKind.from_type(event_type)
    data = event.get("data") or {}
    obj = data.get("object") or {}

    session = session_from_stripe(obj) if kind.is_session_event else None
    charge = charge_from_stripe(obj) if kind.is_charge_event else None
    return ProcessorEvent(
        id=event.get("id"),
        type=event_type,
        kind=kind,
        session=session,
        charge=charge,
    )


def get_processor() -> ProcessorAdapter:
    """The adapter instance built at startup."""
    processor = current_app.extensions.get("payment_processor")
    if processor is None:
        raise ConfigurationError("Payment processor is not configured")
    return processor
