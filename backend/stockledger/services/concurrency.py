# Overview: Service-layer helpers for concurrency; row locks and bounded retry around stock writes.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict, PersistenceError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, StaleDataError, IntegrityError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id columns catch the lost update instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, session, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and IntegrityError (a concurrent writer
    claimed the same unique key first). The session is rolled back before
    every retry.

    Once the attempts are exhausted the failure surfaces as
    ConcurrencyConflict (stale rows) or PersistenceError (anything else).
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            session.rollback()
            if attempt >= attempts - 1:
                logger.error("stock write failed after %d attempt(s): %s", attempts, exc)
                if isinstance(exc, StaleDataError):
                    raise ConcurrencyConflict(
                        f"Concurrent update conflict after {attempts} attempt(s)"
                    ) from exc
                raise PersistenceError(f"Database failure after {attempts} attempt(s): {exc}") from exc
            delay = backoff_base * (2 ** attempt)
            logger.warning(
                "retrying stock write (attempt %d/%d) in %.2fs: %s",
                attempt + 1, attempts, delay, exc.__class__.__name__,
            )
            time.sleep(delay)
