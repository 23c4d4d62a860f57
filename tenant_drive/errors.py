"""Error taxonomy and tagged results for control-plane operations."""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    EXPIRED = "EXPIRED"
    LIMIT_REACHED = "LIMIT_REACHED"
    REVOKED = "REVOKED"
    TRANSFER = "TRANSFER"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


class TenantDriveError(Exception):
    """Base class for every error surfaced by the control plane."""

    kind = ErrorKind.INTERNAL
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value.lower())
        self.message = message or self.kind.value.lower()


class AuthenticationError(TenantDriveError):
    kind = ErrorKind.AUTHENTICATION
    status_code = 401


class AuthorizationError(TenantDriveError):
    kind = ErrorKind.AUTHORIZATION
    status_code = 403


class NotFoundError(TenantDriveError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ValidationError(TenantDriveError):
    kind = ErrorKind.VALIDATION
    status_code = 400


class ExpiredError(TenantDriveError):
    kind = ErrorKind.EXPIRED
    status_code = 403


class LimitReachedError(TenantDriveError):
    kind = ErrorKind.LIMIT_REACHED
    status_code = 403


class RevokedError(TenantDriveError):
    kind = ErrorKind.REVOKED
    status_code = 403


class TransferError(TenantDriveError):
    kind = ErrorKind.TRANSFER
    status_code = 502


class ConflictError(TenantDriveError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class InternalError(TenantDriveError):
    kind = ErrorKind.INTERNAL
    status_code = 500


class MetadataStoreError(Exception):
    """Raised by the metadata store when its backing state cannot be read or written."""


class ObjectStoreError(Exception):
    """Raised by object store implementations for backend failures."""


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[TenantDriveError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: TenantDriveError) -> "Result[T]":
        return cls(error=error)


def returns_result(func: Callable[..., T]) -> Callable[..., Result[T]]:
    """Run ``func`` and wrap its outcome in a :class:`Result`.

    Domain errors become failures as-is. Backend errors from the metadata or
    object store are logged and replaced by an opaque :class:`InternalError`
    so raw driver messages never reach callers.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
        try:
            return Result.success(func(*args, **kwargs))
        except TenantDriveError as exc:
            return Result.failure(exc)
        except MetadataStoreError:
            logger.exception("Metadata store failure in %s", func.__qualname__)
            return Result.failure(InternalError("metadata store unavailable"))
        except ObjectStoreError:
            logger.exception("Object store failure in %s", func.__qualname__)
            return Result.failure(InternalError("object store unavailable"))

    return wrapper
