# drayage/core/utils/db.py
"""Shared helpers for classifying database errors."""

from __future__ import annotations

from typing import Iterator

from psycopg import InterfaceError, OperationalError
from psycopg.errors import DeadlockDetected, LockNotAvailable, SerializationFailure
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

# SQLSTATEs of conflicts that succeed when the whole unit is retried.
DEADLOCK_SQLSTATES: frozenset[str] = frozenset({'40P01', '55P03', '40001'})

DEADLOCK_MESSAGE_SIGNATURES: tuple[str, ...] = (
    'deadlock',
    'lock wait timeout',
    'could not obtain lock',
    'could not serialize access',
)


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient connection error worth retrying."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield exc, the driver error wrapped by SQLAlchemy, and the cause/context chain."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if isinstance(current, DBAPIError) and isinstance(current.orig, BaseException):
            if id(current.orig) not in seen:
                seen.add(id(current.orig))
                yield current.orig
        current = current.__cause__ or current.__context__


def is_deadlock_error(exc: BaseException) -> bool:
    """Check whether an exception (or anything it wraps) is a deadlock/lock-timeout."""
    for err in iter_exception_chain(exc):
        match err:
            case DeadlockDetected() | LockNotAvailable() | SerializationFailure():
                return True
            case _:
                pass
        sqlstate = getattr(err, 'sqlstate', None) or getattr(err, 'pgcode', None)
        if sqlstate in DEADLOCK_SQLSTATES:
            return True
        message = str(err).lower()
        if any(sig in message for sig in DEADLOCK_MESSAGE_SIGNATURES):
            return True
    return False
