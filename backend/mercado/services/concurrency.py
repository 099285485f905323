# Overview: Transaction helpers for concurrent writers: retry, write locks and compare-and-set.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Open the current transaction as a writer.

    On SQLite this takes the database write lock up front (BEGIN IMMEDIATE)
    so read-then-write sequences cannot interleave with another writer.
    Other dialects rely on lock_for_update() and conditional updates.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates, so a failed operation never leaves a write
    transaction open.
    """
    if attempts is None:
        attempts = current_app.config.get("DB_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("DB_RETRY_BACKOFF_SECONDS", 0.1)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.info(
                "Retrying after %s (attempt %d of %d)", type(exc).__name__, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def commit_with_retry(*, attempts: int | None = None, backoff_base: float | None = None):
    """Commit current session with retry handling."""
    def _op():
        db.session.commit()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)


def compare_and_set(instance, expected: dict, *criteria, **values) -> bool:
    """
    Conditionally update one row and report whether this caller won.

    Emits UPDATE ... WHERE id = :id AND <expected> AND <criteria> and checks
    that exactly one row changed. `expected` maps column names to a value or
    to a collection of allowed values. Mapped version counters are bumped so
    stale ORM copies elsewhere fail their own flush.

    The instance is expired either way; the next attribute access re-reads
    the committed row.
    """
    model = type(instance)
    stmt = update(model).where(model.id == instance.id)
    for column_name, allowed in expected.items():
        column = getattr(model, column_name)
        if isinstance(allowed, (set, frozenset, list, tuple)):
            stmt = stmt.where(column.in_(list(allowed)))
        else:
            stmt = stmt.where(column == allowed)
    for criterion in criteria:
        stmt = stmt.where(criterion)

    if hasattr(model, "version_id") and "version_id" not in values:
        values["version_id"] = model.version_id + 1

    db.session.flush()
    result = db.session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    db.session.expire(instance)
    return result.rowcount == 1
