# Overview: Row locking and retry helpers shared by the service layer.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError

from ..extensions import db


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on PostgreSQL; a no-op on SQLite.

    Never the only guard: the compare-and-set UPDATEs and unique indexes
    keep state consistent when the lock is not honored.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 5, backoff_base: float = 0.05):
    """
    Call `func`, re-running it after lock contention.

    OperationalError (deadlock, "database is locked") rolls the session
    back and retries with exponential backoff; the last failure is
    re-raised. `func` must therefore start its unit of work from scratch.
    Every other exception propagates immediately.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except OperationalError as exc:
            db.session.rollback()
            if attempt == attempts:
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            current_app.logger.warning(
                "Lock contention (attempt %d/%d), retrying in %.2fs: %s",
                attempt, attempts, delay, exc.orig,
            )
            time.sleep(delay)
