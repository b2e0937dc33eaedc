"""Tests for the StorageClient facade.

- Roundtrip, listing and folder views through the facade
- Integrity: tampered bodies surface as CorruptObjectError
- Conditional writes and idempotent delete
- Retries follow the policy schedule; deadlines bound total time
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import pytest

from storageio.adapters.local import LocalDiskAdapter
from storageio.adapters.memory import InMemoryAdapter
from storageio.client import StorageClient
from storageio.config import StorageConfig
from storageio.errors import (
    ConflictError,
    CorruptObjectError,
    ErrorKind,
    InvalidKeyError,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    PermissionDeniedError,
    StorageUnavailableError,
)
from storageio.keys import normalize
from storageio.retry import RetryPolicy


class TestPutGet:
    """Tests for put() and get()."""

    def test_roundtrip_and_listing(self, client: StorageClient) -> None:
        client.put("a/b/c.txt", "hello")
        client.put("a/bc.txt", b"other")

        assert client.get("a/b/c.txt").body == b"hello"
        listed = list(client.list("a/b"))
        assert [str(m.key) for m in listed] == ["a/b/c.txt"]
        assert listed[0].size_bytes == 5

    def test_key_normalization_is_applied(self, client: StorageClient) -> None:
        client.put("//a//b.txt", b"x")
        assert client.get("a/b.txt").body == b"x"
        assert client.exists(normalize("a/b.txt"))

    def test_str_body_is_utf8(self, client: StorageClient) -> None:
        metadata = client.put("k", "héllo")
        assert metadata.size_bytes == 6
        assert client.get("k").body == "héllo".encode()

    def test_tags_roundtrip(self, client: StorageClient) -> None:
        client.put("k", b"x", tags={"owner": "ops"})
        assert client.stat_metadata("k").tags == {"owner": "ops"}

    def test_invalid_tags(self, client: StorageClient) -> None:
        with pytest.raises(TypeError):
            client.put("k", b"x", tags={"n": 1})  # type: ignore[dict-item]

    def test_get_missing(self, client: StorageClient, fake_clock: Any) -> None:
        with pytest.raises(ObjectNotFoundError):
            client.get("missing")
        assert fake_clock.sleeps == []

    def test_invalid_key_never_reaches_adapter(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
    ) -> None:
        memory_adapter.inject_fault("read", ErrorKind.UNAVAILABLE)
        with pytest.raises(InvalidKeyError):
            client.get("../etc/passwd")
        # the queued fault is still pending
        with pytest.raises(StorageUnavailableError):
            client.get("k")

    def test_overwrite_false(self, client: StorageClient) -> None:
        client.put("k", b"v1", overwrite=False)
        with pytest.raises(ObjectAlreadyExistsError):
            client.put("k", b"v2", overwrite=False)
        assert client.get("k").body == b"v1"


class TestIntegrity:
    """Tampered bodies are detected on read."""

    def test_get_detects_tamper(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
    ) -> None:
        client.put("k", b"original")
        memory_adapter.tamper(normalize("k"), b"tampered")
        with pytest.raises(CorruptObjectError) as exc_info:
            client.get("k")
        assert exc_info.value.expected_hash == client.stat_metadata("k").content_hash

    def test_open_read_detects_tamper_at_eof(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
    ) -> None:
        client.put("k", b"original")
        memory_adapter.tamper(normalize("k"), b"tampered")
        reader = client.open_read("k")
        assert reader.read(3) == b"tam"
        with pytest.raises(CorruptObjectError):
            reader.read()
        reader.close()

    def test_zero_length_read_does_not_verify(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
    ) -> None:
        """read(0) is not end of stream; verification still runs at EOF."""
        client.put("k", b"hello")
        with client.open_read("k") as reader:
            assert reader.read(0) == b""
            assert reader.read() == b"hello"

        memory_adapter.tamper(normalize("k"), b"jello")
        with client.open_read("k") as reader:
            assert reader.read(0) == b""
            with pytest.raises(CorruptObjectError):
                reader.read()

    def test_open_read_chunks(self, client: StorageClient) -> None:
        client.put("k", b"abcdefghij")
        with client.open_read("k") as reader:
            assert list(reader.iter_chunks(4)) == [b"abcd", b"efgh", b"ij"]
            assert reader.metadata.size_bytes == 10

    def test_local_file_tamper(self, temp_storage_dir: Path) -> None:
        adapter = LocalDiskAdapter(temp_storage_dir / "store")
        client = StorageClient(adapter, retry_policy=RetryPolicy(max_retries=0))
        client.put("doc.txt", b"trusted")
        [data_file] = list((temp_storage_dir / "store" / "objects").rglob("*.data"))
        data_file.write_bytes(b"evil!!!")
        with pytest.raises(CorruptObjectError):
            client.get("doc.txt")


class TestConditionalAndDelete:
    def test_conflict_law(self, client: StorageClient, fake_clock: Any) -> None:
        first = client.put("k", b"v1")
        second = client.put_if_match("k", b"v2", first.content_hash)
        assert second.content_hash != first.content_hash

        with pytest.raises(ConflictError):
            client.put_if_match("k", b"v3", first.content_hash)
        assert client.get("k").body == b"v2"
        assert fake_clock.sleeps == []

    def test_put_if_match_absent(self, client: StorageClient) -> None:
        with pytest.raises(ConflictError):
            client.put_if_match("k", b"v", "0" * 64)

    def test_delete_is_idempotent(self, client: StorageClient) -> None:
        client.put("k", b"v")
        assert client.delete("k") is True
        assert client.delete("k") is False
        assert not client.exists("k")


class TestRetries:
    """Retry behaviour through the facade."""

    def test_transient_failures_within_budget(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
        retry_policy: RetryPolicy,
        fake_clock: Any,
    ) -> None:
        client.put("k", b"v")
        memory_adapter.inject_fault("read", ErrorKind.TRANSIENT, times=3)
        assert client.get("k").body == b"v"
        assert fake_clock.sleeps == pytest.approx(retry_policy.schedule())

    def test_transient_failures_exhaust_retries(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
    ) -> None:
        client.put("k", b"v")
        memory_adapter.inject_fault("read", ErrorKind.TRANSIENT, times=4)
        with pytest.raises(StorageUnavailableError) as exc_info:
            client.get("k")
        assert exc_info.value.attempts == 4
        assert exc_info.value.kind == ErrorKind.UNAVAILABLE

    def test_permanent_failure_not_retried(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
        fake_clock: Any,
    ) -> None:
        memory_adapter.inject_fault("write_full", ErrorKind.PERMISSION_DENIED)
        with pytest.raises(PermissionDeniedError):
            client.put("k", b"v")
        assert fake_clock.sleeps == []

    def test_timeout_bounds_retries(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
        fake_clock: Any,
    ) -> None:
        memory_adapter.inject_fault("stat", ErrorKind.TRANSIENT, times=3)
        with pytest.raises(StorageUnavailableError) as exc_info:
            client.stat_metadata("k", timeout=0.25)
        assert fake_clock.sleeps == pytest.approx([0.1])
        assert "budget" in exc_info.value.message

    def test_real_sleep_waits_for_schedule(self, memory_adapter: InMemoryAdapter) -> None:
        """With the real clock, elapsed time covers the whole backoff schedule."""
        policy = RetryPolicy(max_retries=3, base_delay_seconds=0.01, jitter_ratio=0.0)
        client = StorageClient(memory_adapter, retry_policy=policy)
        client.put("k", b"v")
        memory_adapter.inject_fault("read", ErrorKind.TRANSIENT, times=3)

        started = time.monotonic()
        client.get("k")
        elapsed = time.monotonic() - started

        assert elapsed >= sum(policy.schedule())

    def test_policy_from_config(self, memory_adapter: InMemoryAdapter) -> None:
        config = StorageConfig(max_retries=1, base_backoff_ms=50, retry_budget_ms=2000)
        client = StorageClient(memory_adapter, config=config)
        assert client.retry_policy.max_retries == 1
        assert client.retry_policy.base_delay_seconds == pytest.approx(0.05)
        assert client.retry_policy.budget_seconds == pytest.approx(2.0)


class TestStreamingWrites:
    """Tests for open_write()."""

    def test_commit_publishes(self, client: StorageClient) -> None:
        writer = client.open_write("big", tags={"a": "b"})
        writer.write(b"part1-")
        writer.write("part2")
        assert not client.exists("big")

        metadata = writer.commit()

        assert metadata.size_bytes == 11
        assert client.get("big").body == b"part1-part2"

    def test_context_exit_aborts(self, client: StorageClient) -> None:
        with client.open_write("big") as writer:
            writer.write(b"partial")
        assert writer.closed
        assert not client.exists("big")

    def test_commit_is_retried(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
        fake_clock: Any,
    ) -> None:
        memory_adapter.inject_fault("commit", ErrorKind.TRANSIENT)
        writer = client.open_write("k")
        writer.write(b"abc")
        assert writer.commit().size_bytes == 3
        assert fake_clock.sleeps == pytest.approx([0.1])

    def test_write_past_deadline_fails_but_commit_completes(
        self,
        client: StorageClient,
        fake_clock: Any,
    ) -> None:
        writer = client.open_write("k", timeout=1.0)
        writer.write(b"abc")
        fake_clock.advance(2.0)

        with pytest.raises(StorageUnavailableError):
            writer.write(b"def")

        assert writer.commit().size_bytes == 3


class TestListing:
    """Tests for list_page(), list() and list_folder()."""

    def test_list_page_tokens(self, client: StorageClient) -> None:
        for i in range(3):
            client.put(f"p/{i}", b"x")
        first = client.list_page("p", limit=2)
        assert len(first.items) == 2
        second = client.list_page("p", page_token=first.next_token, limit=2)
        assert [str(m.key) for m in second.items] == ["p/2"]
        assert second.next_token is None

    def test_list_page_rejects_bad_limit(self, client: StorageClient) -> None:
        with pytest.raises(ValueError):
            client.list_page(limit=0)

    def test_list_is_lazy(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
    ) -> None:
        client.put("k", b"x")
        memory_adapter.inject_fault("list_page", ErrorKind.PERMISSION_DENIED)
        iterator = client.list()
        with pytest.raises(PermissionDeniedError):
            next(iterator)

    def test_list_folder(self, client: StorageClient) -> None:
        for raw in [
            "docs/a.txt",
            "docs/sub/b.txt",
            "docs/sub/deep/c.txt",
            "docs/other/x",
            "top.txt",
        ]:
            client.put(raw, b"data")

        listing = client.list_folder("docs")
        assert [str(m.key) for m in listing.files] == ["docs/a.txt"]
        assert [str(f) for f in listing.folders] == ["docs/other", "docs/sub"]

        root = client.list_folder()
        assert root.prefix is None
        assert [str(m.key) for m in root.files] == ["top.txt"]
        assert [str(f) for f in root.folders] == ["docs"]


class TestHealthCheck:
    def test_healthy(self, client: StorageClient) -> None:
        assert client.health_check()

    def test_unhealthy(
        self,
        client: StorageClient,
        memory_adapter: InMemoryAdapter,
    ) -> None:
        memory_adapter.inject_fault("list_page", ErrorKind.PERMISSION_DENIED)
        assert not client.health_check()

    def test_backend_name(self, client: StorageClient) -> None:
        assert client.backend_name == "memory"
