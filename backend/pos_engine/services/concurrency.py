# Overview: Transaction boundary and retry helpers shared by every mutating service.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import InternalError, PosError

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the write lock comes from begin_immediate() instead.
    """
    return query.with_for_update()


def begin_immediate(session) -> None:
    """
    Take SQLite's write lock up front so concurrent writers queue instead of
    interleaving their stock checks. No-op on other dialects and when the
    driver already has a transaction open.
    """
    conn = session.connection()
    if conn.dialect.name != "sqlite":
        return
    raw = conn.connection.dbapi_connection
    if getattr(raw, "in_transaction", False):
        return
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def run_with_retry(session, func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.warning("Retrying after concurrency failure (attempt %d): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_in_transaction(session, func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run ``func`` as one atomic unit against the store.

    Commits when ``func`` returns, rolls back on any exception. Engine errors
    propagate unchanged; database failures that survive the retry budget
    surface as InternalError.
    """
    def _op():
        try:
            begin_immediate(session)
            result = func()
            session.commit()
            return result
        except BaseException:
            session.rollback()
            raise

    try:
        return run_with_retry(session, _op, attempts=attempts, backoff_base=backoff_base)
    except PosError:
        raise
    except SQLAlchemyError as exc:
        logger.exception("Store transaction failed")
        raise InternalError("Store transaction failed", details={"cause": type(exc).__name__}) from exc
