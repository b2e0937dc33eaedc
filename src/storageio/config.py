"""Storage configuration.

Configuration is passed at backend construction. ``load_storage_config``
builds it from environment variables:

Environment Variables:
    STORAGEIO_BACKEND: "memory", "local" or "remote" (default: "local")
    STORAGEIO_ROOT_PATH: Root directory for the local backend
        (default: OS temp dir / storageio_objects)
    STORAGEIO_MAX_RETRIES: Retries after the first attempt (default: 3)
    STORAGEIO_BASE_BACKOFF_MS: Base backoff delay (default: 100)
    STORAGEIO_MAX_BACKOFF_MS: Backoff cap (default: 5000)
    STORAGEIO_REQUEST_TIMEOUT_MS: Per-request timeout (default: 10000)
    STORAGEIO_RETRY_BUDGET_MS: Total wall-time budget per call (default: 30000)
    STORAGEIO_JITTER_RATIO: Extra random delay ratio, 0-1 (default: 0.1)
    STORAGEIO_HASH_ALGORITHM: sha256, sha512, blake2b or md5 (default: sha256)
    STORAGEIO_REMOTE_BASE_URL: Base URL of the remote object API
    STORAGEIO_REMOTE_BUCKET: Bucket name on the remote object API
    STORAGEIO_NATIVE_CONDITIONAL: "1" if the remote honours If-Match (default: 1)
"""

from __future__ import annotations

import os
import tempfile
from enum import StrEnum
from pathlib import Path
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from storageio.errors import StorageConfigError
from storageio.models import HashAlgorithm

ENV_PREFIX: Final[str] = "STORAGEIO_"

DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_BASE_BACKOFF_MS: Final[int] = 100
DEFAULT_MAX_BACKOFF_MS: Final[int] = 5000
DEFAULT_REQUEST_TIMEOUT_MS: Final[int] = 10_000
DEFAULT_RETRY_BUDGET_MS: Final[int] = 30_000
DEFAULT_JITTER_RATIO: Final[float] = 0.1


class BackendKind(StrEnum):
    """Adapter variants known to the factory."""

    MEMORY = "memory"
    LOCAL = "local"
    REMOTE = "remote"


def default_root_path() -> str:
    """Return the default root directory for the local backend."""
    return str(Path(tempfile.gettempdir()) / "storageio_objects")


class StorageConfig(BaseModel):
    """Storage configuration (immutable).

    Attributes:
        backend: Which adapter to build.
        root_path: Root directory of the local backend.
        max_retries: Retries after the first attempt for transient failures.
        base_backoff_ms: Delay before the first retry.
        max_backoff_ms: Cap for a single backoff delay.
        request_timeout_ms: Timeout of a single remote request.
        retry_budget_ms: Default wall-time bound for one facade call.
        jitter_ratio: Up to this fraction of each delay is added at random.
        hash_algorithm: Content hash algorithm, fixed for the store.
        remote_base_url: Base URL of the remote object API.
        remote_bucket: Bucket name on the remote object API.
        native_conditional: Whether the remote honours If-Match on PUT.
    """

    model_config = ConfigDict(frozen=True)

    backend: BackendKind = BackendKind.LOCAL
    root_path: str = Field(default_factory=default_root_path)
    max_retries: int = Field(ge=0, default=DEFAULT_MAX_RETRIES)
    base_backoff_ms: int = Field(gt=0, default=DEFAULT_BASE_BACKOFF_MS)
    max_backoff_ms: int = Field(gt=0, default=DEFAULT_MAX_BACKOFF_MS)
    request_timeout_ms: int = Field(gt=0, default=DEFAULT_REQUEST_TIMEOUT_MS)
    retry_budget_ms: int = Field(gt=0, default=DEFAULT_RETRY_BUDGET_MS)
    jitter_ratio: float = Field(ge=0.0, le=1.0, default=DEFAULT_JITTER_RATIO)
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256
    remote_base_url: str | None = None
    remote_bucket: str | None = None
    native_conditional: bool = True

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> StorageConfig:
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError(
                f"max_backoff_ms ({self.max_backoff_ms}) must be >= "
                f"base_backoff_ms ({self.base_backoff_ms})"
            )
        if self.backend == BackendKind.REMOTE and not (
            self.remote_base_url and self.remote_bucket
        ):
            raise ValueError("remote backend requires remote_base_url and remote_bucket")
        return self

    @property
    def request_timeout_seconds(self) -> float:
        """Return the per-request timeout in seconds."""
        return self.request_timeout_ms / 1000.0


def _env(name: str) -> str | None:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _env_bool(name: str) -> bool | None:
    raw = _env(name)
    if raw is None:
        return None
    lowered = raw.lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise StorageConfigError(f"{ENV_PREFIX}{name} must be a boolean, got '{raw}'")


_ENV_FIELDS: Final[dict[str, str]] = {
    "BACKEND": "backend",
    "ROOT_PATH": "root_path",
    "MAX_RETRIES": "max_retries",
    "BASE_BACKOFF_MS": "base_backoff_ms",
    "MAX_BACKOFF_MS": "max_backoff_ms",
    "REQUEST_TIMEOUT_MS": "request_timeout_ms",
    "RETRY_BUDGET_MS": "retry_budget_ms",
    "JITTER_RATIO": "jitter_ratio",
    "HASH_ALGORITHM": "hash_algorithm",
    "REMOTE_BASE_URL": "remote_base_url",
    "REMOTE_BUCKET": "remote_bucket",
}


def load_storage_config(**overrides: object) -> StorageConfig:
    """Load storage configuration from environment variables.

    Args:
        **overrides: Field values that take precedence over the environment.

    Returns:
        StorageConfig with validated values.

    Raises:
        StorageConfigError: If any value is invalid.
    """
    values: dict[str, object] = {}
    for env_name, field_name in _ENV_FIELDS.items():
        raw = _env(env_name)
        if raw is not None:
            values[field_name] = raw

    native_conditional = _env_bool("NATIVE_CONDITIONAL")
    if native_conditional is not None:
        values["native_conditional"] = native_conditional

    values.update(overrides)

    try:
        return StorageConfig.model_validate(values)
    except ValidationError as e:
        raise StorageConfigError(f"Invalid storage configuration: {e}") from e
