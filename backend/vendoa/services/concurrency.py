# Overview: Transaction scoping, row locking and compare-and-set helpers shared by the core services.

from __future__ import annotations

import logging
import time
from contextlib import contextmanager

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm import Session

from ..errors import PosError, StorageError

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The compare-and-set helpers below keep the invariants on SQLite too.
    """
    return query.with_for_update()


@contextmanager
def atomic(session: Session):
    """
    Run a block as one all-or-nothing unit on ``session``.

    Commits when the block finishes. Any error rolls back every write made
    inside the block: domain errors propagate unchanged, SQLAlchemy errors
    become StorageError.
    """
    try:
        yield session
        session.commit()
    except (PosError, StaleDataError):
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Storage transaction failed")
        raise StorageError() from exc
    except Exception:
        session.rollback()
        raise


def compare_and_set(session: Session, model, row_id: int, *, where=(), values: dict) -> bool:
    """
    Issue ``UPDATE model SET values WHERE id = row_id AND <where>``.

    Returns True when exactly one row changed. False means the guard did not
    hold at write time (or the row is gone); callers turn that into a
    conflict and abort the transaction.
    """
    stmt = (
        update(model)
        .where(model.id == row_id, *where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def run_with_retry(func, *, retry_on: tuple, attempts: int = 3, backoff_base: float = 0.0):
    """
    Execute ``func`` and re-run it when it raises one of ``retry_on``.

    Only for failures where re-running the whole unit is known to be safe
    (the previous attempt was rolled back and nothing it wrote survived).
    """
    last_exc = None
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.warning("Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts)
            if backoff_base:
                time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
