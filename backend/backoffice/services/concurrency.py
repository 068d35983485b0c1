# Overview: Transaction boundary, write-lock acquisition and conflict retry for orchestrators.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import ConcurrencyConflictError

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() takes the
    database write lock there instead.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Start the write transaction for the current operation.

    On SQLite this issues BEGIN IMMEDIATE so concurrent writers serialize
    before reading balances. Other dialects rely on lock_for_update().
    A no-op if the connection already holds an open transaction.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if raw is not None and raw.in_transaction:
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


def run_in_transaction(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute func() and commit as one atomic unit.

    - Any exception rolls the whole unit back and propagates unchanged.
    - OperationalError (lock timeouts, deadlocks) and StaleDataError
      (optimistic version conflicts) are retried with exponential backoff;
      once attempts are exhausted the loser gets ConcurrencyConflictError.
    - IntegrityError is treated the same way: two writers creating the same
      projection row race on its unique key and the loser must see a conflict.
    """
    if attempts is None:
        attempts = current_app.config.get("TXN_RETRY_ATTEMPTS", 1)
    if backoff_base is None:
        backoff_base = current_app.config.get("TXN_RETRY_BACKOFF", 0.05)

    for attempt in range(attempts):
        try:
            result = func()
            db.session.commit()
            return result
        except (OperationalError, StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.warning("Transaction gave up after %d attempts: %s", attempts, exc)
                raise ConcurrencyConflictError(
                    "Concurrent update conflict; please retry",
                    details={"attempts": attempts},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    raise ConcurrencyConflictError("Concurrent update conflict; please retry", details={"attempts": attempts})
