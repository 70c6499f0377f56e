"""Unit-of-work helpers: one transaction per operation, conflicts surfaced as ConflictError"""

import functools
import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from chama_engine.config import settings
from chama_engine.domain.exceptions import ConflictError
from chama_engine.infrastructure.observability.metrics import conflict_counter

logger = logging.getLogger(__name__)


@contextmanager
def transaction(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """
    Open a session, commit on success and roll back on any exception.

    Optimistic-lock failures, unique-constraint races and lock timeouts are
    re-raised as ConflictError so callers can retry the whole operation.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConflictError("Record was modified by a concurrent writer") from e
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Concurrent write violated a uniqueness rule") from e
    except OperationalError as e:
        db.rollback()
        if _is_lock_failure(e):
            raise ConflictError("Could not acquire row lock") from e
        raise
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


def _is_lock_failure(error: OperationalError) -> bool:
    text = str(error.orig).lower() if error.orig is not None else str(error).lower()
    return any(marker in text for marker in ("deadlock", "could not obtain lock", "lock timeout", "database is locked"))


def retry_on_conflict(operation: str, max_retries: int | None = None, backoff_seconds: float | None = None):
    """
    Re-run the decorated operation when it fails with ConflictError.

    Each attempt opens a fresh transaction, so state is re-read and every
    precondition re-checked. Backoff doubles per attempt.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            retries = settings.conflict_max_retries if max_retries is None else max_retries
            base = settings.conflict_backoff_seconds if backoff_seconds is None else backoff_seconds
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except ConflictError as e:
                    attempt += 1
                    conflict_counter.labels(operation=operation).inc()
                    if attempt > retries:
                        logger.warning(
                            "Conflict retries exhausted",
                            extra={"operation": operation, "attempts": attempt, "error": str(e)},
                        )
                        raise
                    logger.info(
                        "Retrying after conflict",
                        extra={"operation": operation, "attempt": attempt, "error": str(e)},
                    )
                    time.sleep(base * (2 ** (attempt - 1)))

        return wrapper

    return decorator
