# Overview: Transaction helpers for ledger writes; the database's uniqueness and version checks are the only synchronization.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConflictError, PersistenceError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id column still catches concurrent writers there.
    """
    return query.with_for_update()


def run_in_transaction(func, *, on_conflict=None, description: str = "ledger write"):
    """
    Run a ledger operation as one transaction and commit it.

    - Uniqueness or optimistic-version collisions (IntegrityError,
      StaleDataError) roll back and call on_conflict(exc); without a
      handler they surface as ConflictError.
    - Any other database failure rolls back and raises PersistenceError.
    - Nothing is retried here. Callers re-issue the operation if they want to.
    """
    try:
        result = func()
        db.session.commit()
        return result
    except (IntegrityError, StaleDataError) as exc:
        db.session.rollback()
        if on_conflict is None:
            current_app.logger.info("Conflict during %s: %s", description, exc)
            raise ConflictError(f"Concurrent update conflict during {description}") from exc
        return on_conflict(exc)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Persistence failure during %s", description)
        raise PersistenceError(f"Failed to persist {description}") from exc
    except Exception:
        db.session.rollback()
        raise
