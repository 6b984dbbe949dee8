# src/itodo_sync/core/errors.py

"""
Error taxonomy of the sync engine.

Remote failures are classified into five kinds; only NETWORK and SERVER are
retried automatically. Classification follows the same style as the rest of the
codebase: explicit types first, then status codes, then well-known class names
(so transport exceptions can be recognized without importing every library).
"""

from __future__ import annotations

import asyncio
from enum import StrEnum


class ErrorKind(StrEnum):
    NETWORK = "network"
    SERVER = "server"
    AUTH = "auth"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.NETWORK, ErrorKind.SERVER)


class SyncError(Exception):
    """Base class for every error raised by itodo_sync."""


class InvalidTimestampError(SyncError, ValueError):
    """Raised when a value cannot be normalized to epoch milliseconds."""


class EntityNotFoundError(SyncError, LookupError):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class NotAuthenticatedError(SyncError):
    """A remote call was attempted without an authenticated session."""


class RemoteError(SyncError):
    """
    Error reported by the remote backend (or the transport in front of it).

    status: HTTP status when the server answered, None for transport failures.
    code:   backend error code (PostgREST/Postgres code, or NETWORK_ERROR / TIMEOUT).
    """

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"{base} (status={self.status})"
        if self.code:
            return f"{base} ({self.code})"
        return base


NETWORK_CODES = {"NETWORK_ERROR", "TIMEOUT", "ECONNREFUSED", "ECONNRESET"}

_NETWORK_CLASS_NAMES = {
    "ConnectError",
    "ConnectTimeout",
    "ReadTimeout",
    "WriteTimeout",
    "PoolTimeout",
    "ReadError",
    "WriteError",
    "RemoteProtocolError",
    "NetworkError",
    "TimeoutException",
    "TransportError",
}


def _is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, RemoteError) and exc.status is None and exc.code in NETWORK_CODES:
        return True
    return any(cls.__name__ in _NETWORK_CLASS_NAMES for cls in type(exc).__mro__)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a remote call onto ErrorKind."""
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        if status in (401, 403):
            return ErrorKind.AUTH
        if status in (400, 409, 422):
            return ErrorKind.VALIDATION
        if 500 <= status < 600:
            return ErrorKind.SERVER

    if isinstance(exc, NotAuthenticatedError):
        return ErrorKind.AUTH

    if _is_network_error(exc):
        return ErrorKind.NETWORK

    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc).retryable
