"""
Transaction helper tests.

Uniqueness and version collisions go to the caller's conflict handler;
nothing is retried.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from zoovio.errors import ConflictError, PersistenceError
from zoovio.models import User
from zoovio.services.concurrency import run_in_transaction


def test_commits_on_success(db_session):
    def op():
        user = User(email="dora@example.com", full_name="Dora", password_hash="x")
        db_session.add(user)
        return user

    user = run_in_transaction(op)
    db_session.rollback()
    assert db_session.get(User, user.id) is not None


def test_uniqueness_collision_calls_handler_once(db_session):
    calls = []

    def op():
        calls.append("op")
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    result = run_in_transaction(op, on_conflict=lambda exc: ("handled", type(exc).__name__))

    assert result == ("handled", "IntegrityError")
    assert calls == ["op"]


def test_stale_version_without_handler_is_conflict(db_session):
    def op():
        raise StaleDataError("version mismatch")

    with pytest.raises(ConflictError):
        run_in_transaction(op)


def test_other_database_errors_are_persistence_errors(db_session):
    def op():
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    with pytest.raises(PersistenceError):
        run_in_transaction(op)


def test_failed_operation_is_rolled_back(db_session):
    def op():
        db_session.add(User(email="eve@example.com", full_name="Eve", password_hash="x"))
        db_session.flush()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        run_in_transaction(op)

    assert db_session.query(User).filter_by(email="eve@example.com").first() is None
