# Overview: Optimistic version guard and retry helpers for ledger-mutating operations.

"""
Version Guard Invariants (authoritative)

- Every mutable record maps SQLAlchemy's version_id_col; UPDATEs are issued as
  UPDATE ... WHERE id = :id AND version = :version_last_read.
- A zero-row UPDATE means someone else wrote first: the session is rolled
  back (every loaded instance is expired and reloads from storage on next
  access) and VersionConflictError is raised. Nothing is merged.
- retry_with_backoff() re-runs the whole closure, which must re-query its
  records, so every retry re-checks business rules against fresh state.
- Creation never checks a version; INSERT initializes it to 0.
"""

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import VersionConflictError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version guard still catches the race there.
    """
    return query.with_for_update()


def guarded_flush(*records) -> None:
    """
    Flush pending changes under the version check.

    Raises VersionConflictError (after rolling back) when any versioned row
    changed since it was read.
    """
    try:
        db.session.flush()
    except StaleDataError as exc:
        db.session.rollback()
        names = ", ".join(repr(r) for r in records) or "record"
        raise VersionConflictError(
            f"Version conflict writing {names}; it was modified concurrently",
            details={"reason": str(exc)},
        ) from exc


def _retry_settings(max_attempts: int | None, backoff_base: float | None) -> tuple[int, float]:
    if max_attempts is None:
        max_attempts = current_app.config.get("VERSION_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("VERSION_RETRY_BACKOFF", 0.05)
    return max(1, int(max_attempts)), float(backoff_base)


def retry_with_backoff(operation, max_attempts: int | None = None, *, backoff_base: float | None = None):
    """
    Execute a DB operation, retrying on concurrency-related failures.

    Retries on VersionConflictError / StaleDataError (optimistic locking) and
    OperationalError (deadlocks, lock timeouts). Any other exception rolls the
    session back and propagates unchanged, so partial ledger changes are never
    left in the session.

    After max_attempts the caller receives VersionConflictError.
    """
    max_attempts, backoff_base = _retry_settings(max_attempts, backoff_base)

    last_exc = None
    for attempt in range(max_attempts):
        try:
            return operation()
        except (VersionConflictError, StaleDataError, OperationalError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= max_attempts - 1:
                break
            current_app.logger.warning(
                "Concurrent modification detected, retrying (attempt %s of %s): %s",
                attempt + 1,
                max_attempts,
                exc,
            )
            if backoff_base:
                time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    if isinstance(last_exc, VersionConflictError):
        raise last_exc
    raise VersionConflictError(
        f"Operation failed after {max_attempts} attempts due to concurrent modification",
        details={"attempts": max_attempts},
    ) from last_exc

