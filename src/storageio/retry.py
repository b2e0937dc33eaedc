"""Retry/backoff primitives for storage operations.

Wraps any adapter call, retrying transient failures with bounded
exponential backoff and jitter. Permanent failures propagate unretried.

Design:
- Attempts: 1 initial + ``max_retries`` retries
- Exponential backoff: base * 2^retry_index, capped per delay
- Jitter is additive and non-negative, so the actual delay never drops
  below the deterministic schedule
- A deadline (per-call timeout or the policy budget) bounds total
  wall time; it is checked at every retry boundary
- Backend hints (Retry-After) can only lengthen a delay, up to the cap

Backoff schedule (base=100ms, cap=5000ms, no jitter):
  Retry 0:  100ms
  Retry 1:  200ms
  Retry 2:  400ms
  Retry 3:  800ms
  ...
  Retry 6: 5000ms (capped)
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, TypeVar

from storageio.errors import (
    ObjectStorageError,
    StorageUnavailableError,
    TransientStorageError,
    ensure_storage_error,
)

if TYPE_CHECKING:
    from storageio.config import StorageConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_BASE_SECONDS: Final[float] = 0.1
DEFAULT_CAP_SECONDS: Final[float] = 5.0
DEFAULT_JITTER_RATIO: Final[float] = 0.1


def compute_backoff_seconds(
    retry_index: int,
    base_seconds: float = DEFAULT_BASE_SECONDS,
    cap_seconds: float = DEFAULT_CAP_SECONDS,
    jitter_ratio: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Compute the backoff delay before retry number ``retry_index``.

    Args:
        retry_index: Zero-based retry index (0 = first retry after the initial attempt).
        base_seconds: Base delay in seconds.
        cap_seconds: Maximum delay before jitter.
        jitter_ratio: Up to this fraction of the delay is added at random.
        rng: Random source (defaults to the module-level generator).

    Returns:
        Delay in seconds.

    Example:
        >>> compute_backoff_seconds(0, base_seconds=0.1, cap_seconds=5.0)
        0.1
        >>> compute_backoff_seconds(3, base_seconds=0.1, cap_seconds=5.0)
        0.8
        >>> compute_backoff_seconds(10, base_seconds=0.1, cap_seconds=5.0)
        5.0
    """
    if retry_index < 0:
        return 0.0

    delay = min(base_seconds * (2**retry_index), cap_seconds)

    if jitter_ratio > 0:
        source = rng if rng is not None else random
        delay += delay * jitter_ratio * source.random()

    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy (immutable).

    Attributes:
        max_retries: Retries after the initial attempt.
        base_delay_seconds: Delay before the first retry.
        max_delay_seconds: Cap for a single delay (before jitter).
        jitter_ratio: Fraction of each delay added at random (0 disables jitter).
        budget_seconds: Default wall-time bound for one call (None = unbounded
            by time, bounded by attempts only).
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_seconds: float = DEFAULT_BASE_SECONDS
    max_delay_seconds: float = DEFAULT_CAP_SECONDS
    jitter_ratio: float = DEFAULT_JITTER_RATIO
    budget_seconds: float | None = None

    def __post_init__(self) -> None:
        """Validate policy values."""
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_seconds <= 0:
            raise ValueError(f"base_delay_seconds must be > 0, got {self.base_delay_seconds}")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError(f"jitter_ratio must be within [0, 1], got {self.jitter_ratio}")
        if self.budget_seconds is not None and self.budget_seconds <= 0:
            raise ValueError(f"budget_seconds must be > 0, got {self.budget_seconds}")

    @classmethod
    def from_config(cls, config: StorageConfig) -> RetryPolicy:
        """Build a policy from storage configuration."""
        return cls(
            max_retries=config.max_retries,
            base_delay_seconds=config.base_backoff_ms / 1000.0,
            max_delay_seconds=config.max_backoff_ms / 1000.0,
            jitter_ratio=config.jitter_ratio,
            budget_seconds=config.retry_budget_ms / 1000.0,
        )

    def schedule(self) -> list[float]:
        """Return the deterministic delays for every retry (no jitter)."""
        return [
            compute_backoff_seconds(i, self.base_delay_seconds, self.max_delay_seconds)
            for i in range(self.max_retries)
        ]


class Deadline:
    """Monotonic deadline for one call.

    A Deadline with ``timeout=None`` never expires.
    """

    def __init__(
        self,
        timeout: float | None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout is not None and timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {timeout}")
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout

    @classmethod
    def never(cls) -> Deadline:
        """Return a deadline that never expires."""
        return cls(None)

    def remaining(self) -> float | None:
        """Return seconds left (never negative), or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        """Return True once the deadline has passed."""
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self, operation: str, *, key: str | None = None) -> None:
        """Raise StorageUnavailableError if the deadline has passed."""
        if self.expired:
            raise StorageUnavailableError(f"Deadline exceeded during {operation}", key=key)


@dataclass
class RetryState:
    """Per-call retry bookkeeping; created per operation and discarded after.

    Attributes:
        attempts: Attempts made so far.
        total_backoff_seconds: Sum of delays slept so far.
        last_error: Most recent transient failure.
    """

    attempts: int = 0
    total_backoff_seconds: float = 0.0
    last_error: ObjectStorageError | None = None


def is_transient(exc: BaseException) -> bool:
    """Return True if ``exc`` is a retryable storage failure."""
    return isinstance(exc, ObjectStorageError) and exc.retryable


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    operation: str,
    key: str | None = None,
    deadline: Deadline | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Invoke ``fn`` under ``policy``.

    Args:
        fn: Zero-argument callable performing one attempt.
        policy: Retry policy.
        operation: Operation name for logs and error messages.
        key: Object key for error context.
        deadline: Bound on total wall time, checked at each retry boundary.
        sleep: Sleep function (injectable for tests).
        rng: Random source for jitter.

    Returns:
        Result of the first successful attempt.

    Raises:
        ObjectStorageError: Permanent failures, unchanged.
        StorageUnavailableError: Retries exhausted or deadline exceeded.
    """
    deadline = deadline or Deadline.never()
    state = RetryState()

    while True:
        deadline.check(operation, key=key)
        state.attempts += 1
        try:
            return fn()
        except ObjectStorageError as e:
            error = e
        except Exception as e:
            error = ensure_storage_error(e, key=key)
            if not error.retryable:
                raise error from e

        if not error.retryable:
            raise error

        state.last_error = error
        retry_index = state.attempts - 1
        if retry_index >= policy.max_retries:
            raise StorageUnavailableError(
                f"{operation} failed after {state.attempts} attempts: {error.message}",
                key=key or error.key,
                backend=error.backend,
                attempts=state.attempts,
            ) from error

        delay = compute_backoff_seconds(
            retry_index,
            policy.base_delay_seconds,
            policy.max_delay_seconds,
            policy.jitter_ratio,
            rng,
        )
        hint = error.retry_after_seconds if isinstance(error, TransientStorageError) else None
        if hint is not None:
            delay = max(delay, min(hint, policy.max_delay_seconds))

        remaining = deadline.remaining()
        if remaining is not None and delay >= remaining:
            raise StorageUnavailableError(
                f"{operation} retry budget exhausted after {state.attempts} attempts: "
                f"{error.message}",
                key=key or error.key,
                backend=error.backend,
                attempts=state.attempts,
            ) from error

        logger.warning(
            "Transient failure in %s (attempt %d/%d), retrying in %.3fs: %s",
            operation,
            state.attempts,
            policy.max_retries + 1,
            delay,
            error,
        )
        sleep(delay)
        state.total_backoff_seconds += delay
