# Overview: Service-layer operations for shopper accounts; password hashing and credential checks.

"""
Authentication Service

Stands in for the credential store: it owns user accounts and password
checks. The order ledger only ever sees the resulting user id.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 6 characters required
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
from flask import current_app

from ..extensions import db
from ..errors import ConflictError, ValidationError
from ..models import User
from zoovio.time_utils import utcnow


MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Cost factor comes from BCRYPT_ROUNDS so tests can run cheaply.
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            "Validation failed",
            [{"field": "password", "message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"}],
        )
    rounds = int(current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds))
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe. A malformed stored hash counts as a
    mismatch.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    email: str,
    password: str,
    full_name: str,
    **profile,
) -> User:
    """
    Create a shopper account.

    Raises:
        ConflictError: If the email is already registered
        ValidationError: If the password is too short
    """
    email = email.strip().lower()
    existing = db.session.query(User).filter_by(email=email).first()
    if existing:
        raise ConflictError("User with this email already exists")

    user = User(
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        **profile,
    )

    db.session.add(user)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Return the active user for these credentials, or None.

    Updates last_login_at on success.
    """
    user = db.session.query(User).filter(
        User.email == email.strip().lower(),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
