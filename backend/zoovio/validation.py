from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import ValidationError


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CENT = Decimal("0.01")

# Smallest charge the processor accepts
MIN_ORDER_TOTAL = Decimal("0.50")

# Maximum price: 9,999,999.99 per unit
# This prevents database overflow issues and nonsensical prices
MAX_UNIT_PRICE = Decimal("9999999.99")

MAX_QUANTITY = 100


@dataclass(frozen=True)
class CartItem:
    product_id: str
    name: str
    category: str
    breed: str
    quantity: int
    unit_price: Decimal
    image: str | None = None

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT)


@dataclass(frozen=True)
class CheckoutRequest:
    """Validated body of POST /api/payments/create-checkout-session."""
    currency: str
    customer_name: str
    customer_email: str
    items: tuple[CartItem, ...]
    shipping_address: dict | None = None
    billing_address: dict | None = None
    notes: str | None = None

    @property
    def total(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0")).quantize(CENT)


class _Errors:
    """Collects field-level problems so a request is rejected wholesale."""

    def __init__(self):
        self.details: list[dict] = []

    def add(self, field: str, message: str) -> None:
        self.details.append({"field": field, "message": message})

    def raise_if_any(self) -> None:
        if self.details:
            raise ValidationError("Validation failed", self.details)


def _parse_decimal(value: Any) -> Decimal | None:
    # bool is an int subclass; reject it explicitly
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str, Decimal)):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _parse_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    return None


def _optional_text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _parse_cart_item(raw: Any, index: int, errors: _Errors) -> CartItem | None:
    prefix = f"cartItems[{index}]"
    if not isinstance(raw, dict):
        errors.add(prefix, "Cart item must be an object")
        return None

    product_id = _optional_text(raw.get("id"))
    if not product_id:
        errors.add(f"{prefix}.id", "Item id is required")

    price = _parse_decimal(raw.get("price"))
    if price is None:
        errors.add(f"{prefix}.price", "Price must be a number")
    elif price <= 0:
        errors.add(f"{prefix}.price", "Price must be positive")
        price = None
    elif price > MAX_UNIT_PRICE:
        # Bounded before quantize(), which overflows on huge exponents
        errors.add(f"{prefix}.price", "Price is too large")
        price = None
    elif price != price.quantize(CENT):
        errors.add(f"{prefix}.price", "Price must have at most 2 decimal places")
        price = None

    raw_quantity = raw.get("quantity", 1)
    quantity = _parse_int(raw_quantity)
    if quantity is None or quantity < 1:
        errors.add(f"{prefix}.quantity", "Quantity must be an integer of at least 1")
    elif quantity > MAX_QUANTITY:
        errors.add(f"{prefix}.quantity", f"Quantity cannot exceed {MAX_QUANTITY}")

    if not product_id or price is None or quantity is None:
        return None

    images = raw.get("images")
    image = images[0] if isinstance(images, list) and images and isinstance(images[0], str) else None

    return CartItem(
        product_id=product_id[:64],
        name=(_optional_text(raw.get("name")) or product_id)[:255],
        category=_optional_text(raw.get("category"))[:64],
        breed=_optional_text(raw.get("breed"))[:128],
        quantity=quantity,
        unit_price=price.quantize(CENT),
        image=image,
    )


def parse_checkout_session_request(payload: Any, supported_currencies) -> CheckoutRequest:
    """
    Validate a checkout request body.

    Required: currency, customerName, customerEmail, cartItems (non-empty).
    Optional: amount (must equal the cart total when given), shippingAddress,
    billingAddress, description.

    Raises ValidationError listing every offending field; nothing is
    persisted for a rejected request.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Validation failed", [{"field": "body", "message": "Invalid JSON payload"}])

    errors = _Errors()
    supported = {c.upper() for c in supported_currencies}

    currency = _optional_text(payload.get("currency")).upper()
    if currency not in supported:
        errors.add("currency", "Currency not supported")

    customer_name = _optional_text(payload.get("customerName"))
    if len(customer_name) < 2:
        errors.add("customerName", "Customer name is required")

    customer_email = _optional_text(payload.get("customerEmail"))
    if not EMAIL_RE.match(customer_email):
        errors.add("customerEmail", "Valid email is required")

    raw_items = payload.get("cartItems")
    items: list[CartItem] = []
    if not isinstance(raw_items, list) or not raw_items:
        errors.add("cartItems", "Cart items are required")
    else:
        for index, raw in enumerate(raw_items):
            item = _parse_cart_item(raw, index, errors)
            if item is not None:
                items.append(item)

    addresses = {}
    for key in ("shippingAddress", "billingAddress"):
        value = payload.get(key)
        if value is not None and not isinstance(value, dict):
            errors.add(key, "Address must be an object")
            value = None
        addresses[key] = value

    notes = payload.get("description")
    if notes is not None and not isinstance(notes, str):
        errors.add("description", "Description must be text")
        notes = None

    errors.raise_if_any()

    request = CheckoutRequest(
        currency=currency,
        customer_name=customer_name[:255],
        customer_email=customer_email[:255],
        items=tuple(items),
        shipping_address=addresses["shippingAddress"],
        billing_address=addresses["billingAddress"],
        notes=(notes.strip()[:1000] or None) if notes else None,
    )

    if request.total < MIN_ORDER_TOTAL:
        errors.add("cartItems", f"Order total must be at least {MIN_ORDER_TOTAL}")

    if "amount" in payload and payload.get("amount") is not None:
        amount = _parse_decimal(payload.get("amount"))
        if amount is None:
            errors.add("amount", "Amount must be a number")
        elif amount != request.total:
            errors.add("amount", f"Amount does not match cart total {request.total}")

    errors.raise_if_any()
    return request


def parse_registration_request(payload: Any) -> dict:
    """Validate POST /api/auth/register."""
    if not isinstance(payload, dict):
        raise ValidationError("Validation failed", [{"field": "body", "message": "Invalid JSON payload"}])

    errors = _Errors()

    full_name = _optional_text(payload.get("fullName"))
    if not 2 <= len(full_name) <= 255:
        errors.add("fullName", "Full name must be between 2 and 255 characters")

    email = _optional_text(payload.get("email")).lower()
    if not EMAIL_RE.match(email):
        errors.add("email", "Please provide a valid email")

    password = payload.get("password")
    if not isinstance(password, str) or len(password) < 6:
        errors.add("password", "Password must be at least 6 characters long")

    errors.raise_if_any()

    return {
        "full_name": full_name,
        "email": email,
        "password": password,
        "phone": _optional_text(payload.get("phone")) or None,
        "address": _optional_text(payload.get("address")) or None,
        "city": _optional_text(payload.get("city")) or None,
        "country": _optional_text(payload.get("country")) or None,
        "postal_code": _optional_text(payload.get("postalCode")) or None,
    }
