# Overview: Local-store transaction helpers shared by the staging layer and the sync engines.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a local DB operation with retry on concurrency-related failures.

    Retries on OperationalError (SQLite "database is locked" while the UI writes)
    and StaleDataError (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


@contextmanager
def local_transaction():
    """
    One local transaction: everything written inside commits together or not at all.

    Readers never observe a staged record and its authoritative counterpart in a
    half-committed state.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def write_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """Run `func` inside its own local transaction, retrying on lock contention."""
    def _op():
        with local_transaction():
            return func()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
