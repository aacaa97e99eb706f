# Overview: Service-layer helpers for locking, retries and step-tagged flushes.

"""
Transaction helpers shared by every service operation.

ROLLBACK:
An operation is one session transaction. Any failure rolls the whole
operation back, so writes from earlier steps (product counters, ledger
rows, customer aggregates) do not stay applied. This replaces the
step-by-step model in which earlier writes survive a later failure and an
operator reconciles by hand.

PersistenceError still names the step that failed and the product,
invoice or customer ids involved, so the failure can be traced in the logs.
"""

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PersistenceError
from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on=RETRYABLE_ERRORS):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts) by default. The whole operation is
    re-run from scratch after a rollback.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            # Domain errors raised mid-operation must not leave half-applied changes in the session
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def run_numbered_with_retry(func, *, backoff_base: float = 0.05):
    """
    run_with_retry for operations that insert an auto-numbered document.

    A concurrent writer taking the same number surfaces as IntegrityError on
    the unique constraint; re-running recomputes the next free number.
    """
    attempts = current_app.config.get("DOCUMENT_NUMBER_ATTEMPTS", 3)
    return run_with_retry(
        func,
        attempts=attempts,
        backoff_base=backoff_base,
        retry_on=RETRYABLE_ERRORS + (IntegrityError,),
    )


def flush_step(step: str, **context) -> None:
    """
    Flush pending writes, tagging any store failure with the step name.

    Concurrency errors propagate untouched so run_with_retry can re-run the
    operation. Anything else rolls back and becomes a PersistenceError that
    carries the step name and the ids involved.
    """
    try:
        db.session.flush()
    except RETRYABLE_ERRORS + (IntegrityError,):
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Store write failed at %s: %s", step, exc)
        raise PersistenceError(step, **context) from exc


def commit_step(step: str, **context) -> None:
    """Commit the operation; same error mapping as flush_step."""
    try:
        db.session.commit()
    except RETRYABLE_ERRORS + (IntegrityError,):
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Commit failed at %s: %s", step, exc)
        raise PersistenceError(step, **context) from exc
