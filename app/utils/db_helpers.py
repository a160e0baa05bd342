"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking that degrades gracefully on SQLite
- An in-process keyed lock so two deliveries for the same booking
  never interleave inside one worker
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional, TypeVar, Type
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError

from ..errors import TransientPersistenceError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        return db.bind.dialect.name == 'postgresql'
    except AttributeError:
        return False


def is_sqlite(db: Session) -> bool:
    """Check if the database is SQLite"""
    try:
        return db.bind.dialect.name == 'sqlite'
    except AttributeError:
        return True  # Default to SQLite for safety


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    nowait: bool = False,
    skip_locked: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter to find the row
        nowait: If True, fail immediately if lock unavailable (PostgreSQL only)
        skip_locked: If True, skip locked rows (PostgreSQL only)

    Returns:
        The locked model instance, or None if not found

    Raises:
        TransientPersistenceError: If nowait=True and the row is locked
            by another transaction

    Example:
        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    """
    query = db.query(model).filter(filter_condition)

    # Only apply locking on PostgreSQL
    if is_postgres(db):
        if skip_locked:
            query = query.with_for_update(skip_locked=True)
        elif nowait:
            query = query.with_for_update(nowait=True)
        else:
            query = query.with_for_update()

    try:
        return query.first()
    except OperationalError as e:
        if "lock" in str(e).lower():
            logger.warning(f"Lock contention on {model.__name__}: {e}")
            raise TransientPersistenceError(f"{model.__name__} is locked by another transaction")
        raise


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get pending records with skip_locked to prevent worker race conditions.

    Useful for background workers processing queues.

    Returns:
        List of locked model instances (other workers will skip these)
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()


class KeyedLock:
    """
    Per-key mutual exclusion within one process.

    Row locks do nothing on SQLite, so every transition also takes the
    booking's keyed lock. Waiting past the timeout raises
    TransientPersistenceError and the caller retries.

    Example:
        with booking_locks.hold(booking_id, timeout=5):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str, timeout: float = 5.0):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1

        acquired = lock.acquire(timeout=timeout)
        try:
            if not acquired:
                raise TransientPersistenceError(f"Timed out waiting for lock on {key}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# One registry per process
booking_locks = KeyedLock()
