# evfleet/services/locks.py
"""
Per-entity critical sections.

Every mutation of a Vehicle, Deployment or MaintenanceLog runs while holding
that entity's key. Keys are always acquired in one global order so two
writers touching the same pair of entities can't deadlock:

    vehicle < pilot < deployment < maintenance < sequence

Inside the section services re-read rows with SELECT ... FOR UPDATE, which
extends the same discipline across processes on Postgres.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Hashable, Iterator, Optional

from flask import current_app, g
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from evfleet.db_models import db
from evfleet.services.errors import DeploymentError, DuplicateKey, InternalError, OperationTimeout

LOCK_RANK = {
    "vehicle": 0,
    "pilot": 1,
    "deployment": 2,
    "maintenance": 3,
    "sequence": 4,
}


class LockTimeout(Exception):
    def __init__(self, key, seconds):
        super().__init__(f"timed out after {seconds}s waiting for {key}")
        self.key = key
        self.seconds = seconds


class KeyedLockRegistry:
    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, Hashable], threading.RLock] = {}

    def _lock_for(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @staticmethod
    def ordered(keys) -> list:
        unique = {k for k in keys if k is not None and k[1] is not None}
        return sorted(unique, key=lambda k: (LOCK_RANK.get(k[0], len(LOCK_RANK)), str(k[1])))

    @contextmanager
    def hold(self, *keys, timeout: float | None = None) -> Iterator[None]:
        """
        Acquire every key (kind, id) in global order; one timeout covers
        all of them. Raises LockTimeout with nothing held.
        """
        timeout = self.default_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        acquired = []
        try:
            for key in self.ordered(keys):
                remaining = max(deadline - time.monotonic(), 0.0)
                lock = self._lock_for(key)
                if not lock.acquire(timeout=remaining):
                    raise LockTimeout(key, timeout)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def get_lock_registry() -> KeyedLockRegistry:
    return current_app.extensions["evfleet_locks"]


def lock_timeout() -> float:
    return float(current_app.config.get("LOCK_TIMEOUT_SECONDS", 5.0))


@dataclass(frozen=True)
class JobDeadline:
    """When the caller waiting on a background job stops waiting (time.monotonic())."""

    at: float
    seconds: float

    def remaining(self) -> float:
        return self.at - time.monotonic()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def current_job_deadline() -> Optional[JobDeadline]:
    return g.get("job_deadline")


def run_locked(keys, operation: str, fn, on_integrity_error=None):
    """
    Run fn() inside the critical section for `keys` and commit before
    releasing. fn returns a result or a DeploymentError; an error result
    rolls the session back so a rejected write leaves nothing behind.

    Inside a dispatcher job the lock wait is capped by the job's deadline,
    and a job that outlives it rolls back instead of committing.
    """
    deadline = current_job_deadline()
    timeout = lock_timeout()
    if deadline is not None:
        timeout = max(min(timeout, deadline.remaining()), 0.0)
    try:
        with get_lock_registry().hold(*keys, timeout=timeout):
            result = fn()
            if isinstance(result, DeploymentError):
                db.session.rollback()
                return result
            if deadline is not None and deadline.expired:
                db.session.rollback()
                current_app.logger.warning("%s abandoned after %ss, nothing committed", operation, deadline.seconds)
                return OperationTimeout(operation=operation, seconds=deadline.seconds)
            db.session.commit()
            return result
    except LockTimeout as e:
        db.session.rollback()
        current_app.logger.warning("%s aborted: %s", operation, e)
        return OperationTimeout(operation=operation, seconds=timeout)
    except IntegrityError as e:
        db.session.rollback()
        current_app.logger.warning("%s hit a constraint: %s", operation, e.orig)
        if on_integrity_error is not None:
            return on_integrity_error(e)
        return DuplicateKey(field_name="unknown", value=str(e.orig))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("%s failed", operation)
        return InternalError()
