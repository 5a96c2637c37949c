# Overview: Unit-of-work helpers; one business operation is one DB transaction.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, LoyaltyError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for rows whose values guard a mutation.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id columns on users/events still reject lost updates.
    """
    return query.with_for_update()


def run_in_transaction(func, *, conflict_message: str = "Concurrent update detected, please resubmit"):
    """
    Execute one business operation atomically.

    Runs func(), flushes and commits. Any exception rolls back every row the
    operation touched. Concurrency failures (optimistic version mismatch,
    lock timeout, uniqueness race) surface as ConflictError. No retry: the
    caller decides whether to resubmit.
    """
    try:
        result = func()
        db.session.commit()
        return result
    except LoyaltyError:
        db.session.rollback()
        raise
    except (StaleDataError, OperationalError) as exc:
        db.session.rollback()
        current_app.logger.warning("Unit of work aborted by concurrent update: %s", exc)
        raise ConflictError(conflict_message) from exc
    except IntegrityError as exc:
        db.session.rollback()
        current_app.logger.warning("Unit of work violated a constraint: %s", exc.orig)
        raise ConflictError(conflict_message) from exc
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Unit of work failed, rolled back")
        raise
