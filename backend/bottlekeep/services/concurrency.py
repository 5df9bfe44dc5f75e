# Overview: Row locking, retry and commit helpers shared by the deposit services.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import ConflictError, DepositError


def lock_for_update(query):
    """Lock the selected rows until commit. A no-op on SQLite, honoured by PostgreSQL."""
    return query.with_for_update()


def _attempts(attempts: int | None) -> int:
    if attempts is not None:
        return attempts
    return int(current_app.config.get("DB_RETRY_ATTEMPTS", 3))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on transient lock failures.

    Only OperationalError (deadlocks, "database is locked") is retried.
    A StaleDataError means another writer won the race; it is surfaced as
    ConflictError and never retried here, the caller re-reads and decides.
    """
    attempts = _attempts(attempts)
    for attempt in range(attempts):
        try:
            return func()
        except DepositError:
            db.session.rollback()
            raise
        except StaleDataError as exc:
            db.session.rollback()
            raise ConflictError("Row was modified concurrently; re-read and retry") from exc
        except OperationalError:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))

