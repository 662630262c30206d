"""Helpers for classifying database/SQLAlchemy errors."""

from __future__ import annotations

import asyncio

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)

from .exceptions import DomainException, FatalError, TransientError

# 40001 serialization_failure, 40P01 deadlock_detected, 08xxx connection
# exceptions, 57P01 admin_shutdown, 53300 too_many_connections.
_TRANSIENT_SQLSTATES = {"40001", "40P01", "57P01", "53300"}
_TRANSIENT_SQLSTATE_PREFIXES = ("08",)
_TRANSIENT_MESSAGES = ("database is locked", "timeout", "connection reset")

_UNIQUE_SQLSTATES = {"23505"}

# Everything a storage call can raise that is not already a domain error.
STORAGE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def _sqlstate(exc: SQLAlchemyError) -> str | None:
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_error(exc: BaseException) -> bool:
    """Return ``True`` if ``exc`` is worth retrying."""

    # Driver-level socket failures (asyncpg resets, refused connects) and
    # per-attempt timeouts surface as OSError or asyncio.TimeoutError.
    if isinstance(exc, (asyncio.TimeoutError, OSError)):
        return True
    if isinstance(exc, (DisconnectionError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if not isinstance(exc, SQLAlchemyError):
        return False

    sqlstate = _sqlstate(exc)
    if sqlstate:
        if sqlstate in _TRANSIENT_SQLSTATES:
            return True
        if sqlstate.startswith(_TRANSIENT_SQLSTATE_PREFIXES):
            return True

    if isinstance(exc, OperationalError):
        message = str(getattr(exc, "orig", exc)).lower()
        return any(marker in message for marker in _TRANSIENT_MESSAGES)

    return False


def is_unique_violation(exc: SQLAlchemyError, constraint: str | None = None) -> bool:
    """Return ``True`` if ``exc`` is a unique-constraint violation.

    When ``constraint`` is given the original driver message must mention it
    (SQLite reports the column list, Postgres the constraint name).
    """

    if not isinstance(exc, IntegrityError):
        return False

    message = str(getattr(exc, "orig", exc)).lower()
    if constraint and constraint.lower() not in message:
        return False

    if _sqlstate(exc) in _UNIQUE_SQLSTATES:
        return True
    return "unique" in message or "duplicate key" in message


def classify_error(exc: BaseException, *, action: str) -> DomainException:
    """Map a persistence failure onto ``TransientError`` or ``FatalError``."""

    if isinstance(exc, DomainException):
        return exc
    if is_transient_error(exc):
        return TransientError(f"{action} failed: storage unavailable, please retry")
    return FatalError(f"{action} failed", code="storage_error")
