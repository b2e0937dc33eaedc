"""Storage error taxonomy.

Every backend failure is expressed as exactly one ``ErrorKind``. Adapters
translate their native signals (errno values, HTTP statuses, injected
faults) with the mapping helpers below before anything leaves the adapter.
Callers branch on ``ErrorKind`` or the exception subclasses, never on a
backend-specific exception type.

Transient errors are retried by the retry engine; the terminal form of an
exhausted retry is ``StorageUnavailableError``.
"""

from __future__ import annotations

import errno
from enum import StrEnum
from typing import Final


class ErrorKind(StrEnum):
    """Shared outcome vocabulary for storage failures."""

    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    PERMISSION_DENIED = "permission_denied"
    CONFLICT = "conflict"
    INVALID_KEY = "invalid_key"
    TRANSIENT = "transient"
    CORRUPT = "corrupt"
    UNAVAILABLE = "unavailable"


class ObjectStorageError(Exception):
    """Base exception for object storage operations.

    Attributes:
        kind: Taxonomy value describing the failure.
        message: Human-readable error message.
        key: Object key associated with the operation (if applicable).
        backend: Backend name that produced the failure (if applicable).
    """

    kind: ErrorKind = ErrorKind.UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.key = key
        self.backend = backend

    @property
    def retryable(self) -> bool:
        """Return True if the retry engine may retry this failure."""
        return self.kind == ErrorKind.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message]
        if self.key:
            parts.append(f"key={self.key}")
        if self.backend:
            parts.append(f"backend={self.backend}")
        return " ".join(parts)


class ObjectNotFoundError(ObjectStorageError):
    """Raised when an object does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        message: str = "Object not found",
        *,
        key: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)


class ObjectAlreadyExistsError(ObjectStorageError):
    """Raised by create-only writes when the object is already present."""

    kind = ErrorKind.ALREADY_EXISTS

    def __init__(
        self,
        message: str = "Object already exists",
        *,
        key: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)


class PermissionDeniedError(ObjectStorageError):
    """Raised when the backend refuses the operation for access reasons."""

    kind = ErrorKind.PERMISSION_DENIED

    def __init__(
        self,
        message: str = "Permission denied",
        *,
        key: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)


class ConflictError(ObjectStorageError):
    """Raised when a conditional write precondition does not hold.

    Attributes:
        expected_hash: Content hash the caller expected.
        actual_hash: Content hash found in the store (None if absent or unknown).
    """

    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        message: str = "Precondition failed",
        *,
        key: str | None = None,
        backend: str | None = None,
        expected_hash: str | None = None,
        actual_hash: str | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class InvalidKeyError(ObjectStorageError):
    """Raised when a key cannot be normalized or is rejected by the backend."""

    kind = ErrorKind.INVALID_KEY

    def __init__(
        self,
        message: str = "Invalid key",
        *,
        key: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)


class TransientStorageError(ObjectStorageError):
    """Raised for failures that may succeed if retried later.

    Attributes:
        retry_after_seconds: Backend-provided hint for the next attempt.
    """

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str = "Transient storage failure",
        *,
        key: str | None = None,
        backend: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)
        self.retry_after_seconds = retry_after_seconds


class CorruptObjectError(ObjectStorageError):
    """Raised when stored bytes do not match the recorded content hash."""

    kind = ErrorKind.CORRUPT

    def __init__(
        self,
        message: str = "Object content does not match its content hash",
        *,
        key: str | None = None,
        backend: str | None = None,
        expected_hash: str | None = None,
        actual_hash: str | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class StorageUnavailableError(ObjectStorageError):
    """Terminal failure: backend down, retries exhausted or deadline exceeded.

    Attributes:
        attempts: Number of attempts made before giving up (if known).
    """

    kind = ErrorKind.UNAVAILABLE

    def __init__(
        self,
        message: str = "Storage backend unavailable",
        *,
        key: str | None = None,
        backend: str | None = None,
        attempts: int | None = None,
    ) -> None:
        super().__init__(message, key=key, backend=backend)
        self.attempts = attempts


class StorageConfigError(ValueError):
    """Raised when storage configuration is invalid or inconsistent."""


_KIND_TO_ERROR: Final[dict[ErrorKind, type[ObjectStorageError]]] = {
    ErrorKind.NOT_FOUND: ObjectNotFoundError,
    ErrorKind.ALREADY_EXISTS: ObjectAlreadyExistsError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.INVALID_KEY: InvalidKeyError,
    ErrorKind.TRANSIENT: TransientStorageError,
    ErrorKind.CORRUPT: CorruptObjectError,
    ErrorKind.UNAVAILABLE: StorageUnavailableError,
}

_ERRNO_TO_KIND: Final[dict[int, ErrorKind]] = {
    errno.ENOENT: ErrorKind.NOT_FOUND,
    errno.ENOTDIR: ErrorKind.NOT_FOUND,
    errno.EEXIST: ErrorKind.ALREADY_EXISTS,
    errno.EACCES: ErrorKind.PERMISSION_DENIED,
    errno.EPERM: ErrorKind.PERMISSION_DENIED,
    errno.EROFS: ErrorKind.PERMISSION_DENIED,
    errno.ENAMETOOLONG: ErrorKind.INVALID_KEY,
    errno.EAGAIN: ErrorKind.TRANSIENT,
    errno.EINTR: ErrorKind.TRANSIENT,
    errno.EBUSY: ErrorKind.TRANSIENT,
    errno.ETIMEDOUT: ErrorKind.TRANSIENT,
    errno.EIO: ErrorKind.TRANSIENT,
    errno.ENOSPC: ErrorKind.UNAVAILABLE,
    getattr(errno, "EDQUOT", errno.ENOSPC): ErrorKind.UNAVAILABLE,
}

_HTTP_STATUS_TO_KIND: Final[dict[int, ErrorKind]] = {
    400: ErrorKind.INVALID_KEY,
    401: ErrorKind.PERMISSION_DENIED,
    403: ErrorKind.PERMISSION_DENIED,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TRANSIENT,
    409: ErrorKind.ALREADY_EXISTS,
    412: ErrorKind.CONFLICT,
    414: ErrorKind.INVALID_KEY,
    425: ErrorKind.TRANSIENT,
    429: ErrorKind.TRANSIENT,
    500: ErrorKind.TRANSIENT,
    502: ErrorKind.TRANSIENT,
    503: ErrorKind.TRANSIENT,
    504: ErrorKind.TRANSIENT,
    507: ErrorKind.UNAVAILABLE,
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    *,
    key: str | None = None,
    backend: str | None = None,
) -> ObjectStorageError:
    """Build the exception instance for a taxonomy value."""
    return _KIND_TO_ERROR[kind](message, key=key, backend=backend)


def kind_for_errno(code: int | None) -> ErrorKind:
    """Classify an errno value; unknown codes are Unavailable."""
    if code is None:
        return ErrorKind.UNAVAILABLE
    return _ERRNO_TO_KIND.get(code, ErrorKind.UNAVAILABLE)


def kind_for_http_status(status: int) -> ErrorKind:
    """Classify an HTTP status; unknown 5xx are Transient, others Unavailable."""
    kind = _HTTP_STATUS_TO_KIND.get(status)
    if kind is not None:
        return kind
    if 500 <= status < 600:
        return ErrorKind.TRANSIENT
    return ErrorKind.UNAVAILABLE


def map_os_error(
    exc: OSError,
    *,
    key: str | None = None,
    backend: str | None = None,
) -> ObjectStorageError:
    """Translate an OSError into the shared taxonomy."""
    kind = kind_for_errno(exc.errno)
    message = f"{exc.strerror or type(exc).__name__} (errno={exc.errno})"
    return error_for_kind(kind, message, key=key, backend=backend)


def map_http_status(
    status: int,
    *,
    key: str | None = None,
    backend: str | None = None,
    retry_after_seconds: float | None = None,
    detail: str | None = None,
) -> ObjectStorageError:
    """Translate an HTTP response status into the shared taxonomy."""
    kind = kind_for_http_status(status)
    message = f"HTTP {status}"
    if detail:
        message = f"{message}: {detail}"
    if kind == ErrorKind.TRANSIENT:
        return TransientStorageError(
            message,
            key=key,
            backend=backend,
            retry_after_seconds=retry_after_seconds,
        )
    return error_for_kind(kind, message, key=key, backend=backend)


def ensure_storage_error(
    exc: BaseException,
    *,
    key: str | None = None,
    backend: str | None = None,
) -> ObjectStorageError:
    """Return ``exc`` if it is already a taxonomy error, else wrap it as Unavailable."""
    if isinstance(exc, ObjectStorageError):
        return exc
    if isinstance(exc, OSError):
        return map_os_error(exc, key=key, backend=backend)
    return StorageUnavailableError(
        f"Unexpected backend failure: {type(exc).__name__}: {exc}",
        key=key,
        backend=backend,
    )
