"""Pytest configuration and fixtures for storageio tests."""

from __future__ import annotations

import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from storageio.adapters.local import LocalDiskAdapter
from storageio.adapters.memory import InMemoryAdapter
from storageio.client import StorageClient
from storageio.retry import RetryPolicy


class FakeClock:
    """Monotonic clock advanced only by ``sleep``; records every delay."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clear_storageio_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep STORAGEIO_* variables from the host environment out of tests."""
    import os

    for name in list(os.environ):
        if name.startswith("STORAGEIO_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_storage_dir() -> Iterator[Path]:
    """Create a temporary directory for storage tests."""
    with tempfile.TemporaryDirectory(prefix="storageio_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_adapter() -> InMemoryAdapter:
    return InMemoryAdapter()


@pytest.fixture
def local_adapter(temp_storage_dir: Path) -> LocalDiskAdapter:
    return LocalDiskAdapter(temp_storage_dir / "store")


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Deterministic policy: no jitter, 100ms base, 1s cap, 3 retries."""
    return RetryPolicy(
        max_retries=3,
        base_delay_seconds=0.1,
        max_delay_seconds=1.0,
        jitter_ratio=0.0,
        budget_seconds=None,
    )


@pytest.fixture
def client(
    memory_adapter: InMemoryAdapter,
    retry_policy: RetryPolicy,
    fake_clock: FakeClock,
) -> StorageClient:
    """Client over an in-memory adapter with a fake clock (no real sleeping)."""
    return StorageClient(
        memory_adapter,
        retry_policy=retry_policy,
        sleep=fake_clock.sleep,
        clock=fake_clock,
    )
