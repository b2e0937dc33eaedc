"""Tests for the local filesystem adapter.

- Roundtrip and metadata persistence across adapter instances
- Atomic commit: staging files and old versions never leak
- Store marker pins the hash algorithm
- errno failures are mapped into the taxonomy
"""

from __future__ import annotations

import errno
import hashlib
import json
import os
import threading
from pathlib import Path
from typing import Any

import pytest

from storageio.adapters import local as local_module
from storageio.adapters.local import LocalDiskAdapter
from storageio.client import StorageClient
from storageio.errors import (
    ConflictError,
    CorruptObjectError,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    PermissionDeniedError,
    StorageConfigError,
    TransientStorageError,
)
from storageio.keys import normalize
from storageio.models import HashAlgorithm
from storageio.retry import RetryPolicy


def _version_files(adapter: LocalDiskAdapter) -> list[Path]:
    return [
        p
        for p in (adapter.root_path / "objects").rglob("*")
        if p.is_file() and p.name != "_latest"
    ]


class TestRoundtrip:
    """Tests for write/read roundtrip."""

    def test_write_then_read(self, local_adapter: LocalDiskAdapter) -> None:
        key = normalize("docs/report.pdf")
        data = os.urandom(64 * 1024)
        metadata = local_adapter.write_full(key, data, tags={"kind": "report"})

        with local_adapter.read(key) as reader:
            assert reader.read() == data
            assert reader.metadata == metadata

        assert metadata.content_hash == hashlib.sha256(data).hexdigest()
        assert metadata.size_bytes == len(data)

    def test_empty_body(self, local_adapter: LocalDiskAdapter) -> None:
        key = normalize("empty")
        local_adapter.write_full(key, b"")
        with local_adapter.read(key) as reader:
            assert reader.read() == b""

    def test_persists_across_instances(self, temp_storage_dir: Path) -> None:
        root = temp_storage_dir / "store"
        first = LocalDiskAdapter(root)
        metadata = first.write_full(normalize("a/b"), b"hello", tags={"x": "y"})

        second = LocalDiskAdapter(root)
        assert second.stat(normalize("a/b")) == metadata

    def test_keys_are_not_filesystem_paths(self, local_adapter: LocalDiskAdapter) -> None:
        local_adapter.write_full(normalize("secret/customer-42.txt"), b"x")
        names = [p.name for p in local_adapter.root_path.rglob("*")]
        assert not any("customer-42" in n for n in names)

    def test_read_missing(self, local_adapter: LocalDiskAdapter) -> None:
        with pytest.raises(ObjectNotFoundError):
            local_adapter.read(normalize("missing/key"))
        with pytest.raises(ObjectNotFoundError):
            local_adapter.stat(normalize("missing/key"))


class TestVersions:
    """Tests for the pointer swap and pruning."""

    def test_overwrite_prunes_old_version(self, local_adapter: LocalDiskAdapter) -> None:
        key = normalize("k")
        local_adapter.write_full(key, b"v1")
        local_adapter.write_full(key, b"v2")
        local_adapter.write_full(key, b"v3")

        with local_adapter.read(key) as reader:
            assert reader.read() == b"v3"
        # one .data and one .meta.json for the current version only
        assert len(_version_files(local_adapter)) == 2

    def test_open_reader_survives_overwrite(self, local_adapter: LocalDiskAdapter) -> None:
        """A reader keeps the version it opened even after the object changes."""
        key = normalize("k")
        local_adapter.write_full(key, b"old")
        reader = local_adapter.read(key)
        local_adapter.write_full(key, b"new")
        with reader:
            assert reader.read() == b"old"

    def test_no_staging_leftovers(self, local_adapter: LocalDiskAdapter) -> None:
        local_adapter.write_full(normalize("k"), b"data")
        assert list((local_adapter.root_path / "staging").iterdir()) == []


class TestConditionalWrites:
    """Tests for if_match / if_none_match."""

    def test_if_match(self, local_adapter: LocalDiskAdapter) -> None:
        key = normalize("k")
        first = local_adapter.write_full(key, b"v1")
        local_adapter.conditional_write(key, b"v2", first.content_hash)
        with pytest.raises(ConflictError):
            local_adapter.conditional_write(key, b"v3", first.content_hash)

    def test_if_none_match(self, local_adapter: LocalDiskAdapter) -> None:
        key = normalize("k")
        local_adapter.write_full(key, b"v1", if_none_match=True)
        with pytest.raises(ObjectAlreadyExistsError):
            local_adapter.write_full(key, b"v2", if_none_match=True)

    def test_failed_precondition_leaves_no_files(self, local_adapter: LocalDiskAdapter) -> None:
        with pytest.raises(ConflictError):
            local_adapter.conditional_write(normalize("k"), b"v", "00")
        assert _version_files(local_adapter) == []
        assert list((local_adapter.root_path / "staging").iterdir()) == []

    def test_concurrent_conditional_writes_single_winner(
        self,
        local_adapter: LocalDiskAdapter,
    ) -> None:
        key = normalize("counter")
        base = local_adapter.write_full(key, b"0")
        outcomes: list[bool] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            try:
                local_adapter.conditional_write(key, str(n).encode(), base.content_hash)
                ok = True
            except ConflictError:
                ok = False
            with lock:
                outcomes.append(ok)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(True) == 1


class TestStreaming:
    """Tests for write_stream."""

    def test_commit_publishes(self, local_adapter: LocalDiskAdapter) -> None:
        key = normalize("big/file.bin")
        writer = local_adapter.write_stream(key, tags={"a": "b"})
        chunks = [os.urandom(1000) for _ in range(5)]
        for chunk in chunks:
            writer.write(chunk)

        with pytest.raises(ObjectNotFoundError):
            local_adapter.stat(key)

        metadata = writer.commit()
        body = b"".join(chunks)
        assert metadata.content_hash == hashlib.sha256(body).hexdigest()
        assert metadata.tags == {"a": "b"}
        with local_adapter.read(key) as reader:
            assert reader.read() == body

    def test_abort_removes_staging(self, local_adapter: LocalDiskAdapter) -> None:
        with local_adapter.write_stream(normalize("k")) as writer:
            writer.write(b"partial")
        assert list((local_adapter.root_path / "staging").iterdir()) == []
        with pytest.raises(ObjectNotFoundError):
            local_adapter.stat(normalize("k"))


class TestListingAndDelete:
    """Tests for list_page and delete."""

    def test_list_prefix(self, local_adapter: LocalDiskAdapter) -> None:
        for raw in ["a/b/c.txt", "a/bc.txt", "a/b/d/e.txt", "b.txt"]:
            local_adapter.write_full(normalize(raw), b"hello")
        items = list(local_adapter.list(normalize("a/b")))
        assert [str(m.key) for m in items] == ["a/b/c.txt", "a/b/d/e.txt"]
        assert all(m.size_bytes == 5 for m in items)

    def test_list_skips_corrupt_descriptor(self, local_adapter: LocalDiskAdapter) -> None:
        local_adapter.write_full(normalize("good"), b"x")
        local_adapter.write_full(normalize("bad"), b"y")
        for meta in (local_adapter.root_path / "objects").rglob("*.meta.json"):
            if json.loads(meta.read_text())["key"] == "bad":
                meta.write_text("{not json")
        assert [str(m.key) for m in local_adapter.list()] == ["good"]
        with pytest.raises(CorruptObjectError):
            local_adapter.stat(normalize("bad"))

    def test_delete(self, local_adapter: LocalDiskAdapter) -> None:
        key = normalize("k")
        local_adapter.write_full(key, b"x")
        local_adapter.delete(key)
        with pytest.raises(ObjectNotFoundError):
            local_adapter.read(key)
        with pytest.raises(ObjectNotFoundError):
            local_adapter.delete(key)
        assert _version_files(local_adapter) == []


class TestStoreMarker:
    """Tests for store.json."""

    def test_marker_written(self, local_adapter: LocalDiskAdapter) -> None:
        marker = json.loads((local_adapter.root_path / "store.json").read_text())
        assert marker["hash_algorithm"] == "sha256"
        assert marker["format_version"] == 1

    def test_algorithm_mismatch(self, temp_storage_dir: Path) -> None:
        LocalDiskAdapter(temp_storage_dir, hash_algorithm=HashAlgorithm.SHA512)
        with pytest.raises(StorageConfigError):
            LocalDiskAdapter(temp_storage_dir, hash_algorithm=HashAlgorithm.SHA256)

    def test_unreadable_marker(self, temp_storage_dir: Path) -> None:
        (temp_storage_dir / "store.json").write_text("garbage")
        with pytest.raises(StorageConfigError):
            LocalDiskAdapter(temp_storage_dir)


class TestErrnoMapping:
    """OS errors raised inside the adapter surface as taxonomy errors."""

    def test_permission_error_on_write(
        self,
        local_adapter: LocalDiskAdapter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def deny(self: Path, data: bytes) -> int:
            raise PermissionError(errno.EACCES, "Permission denied")

        monkeypatch.setattr(Path, "write_bytes", deny)
        with pytest.raises(PermissionDeniedError) as exc_info:
            local_adapter.write_full(normalize("k"), b"x")
        assert exc_info.value.backend == "local"

    @pytest.mark.parametrize("failing_call", [1, 2])
    def test_commit_retried_after_descriptor_or_pointer_failure(
        self,
        local_adapter: LocalDiskAdapter,
        monkeypatch: pytest.MonkeyPatch,
        fake_clock: Any,
        failing_call: int,
    ) -> None:
        """An EIO after the body moved into place leaves the commit retryable."""
        original = local_module._write_file_atomic
        calls = {"n": 0}

        def flaky_write(path: Path, data: bytes) -> None:
            calls["n"] += 1
            if calls["n"] == failing_call:
                raise OSError(errno.EIO, "I/O error")
            original(path, data)

        monkeypatch.setattr(local_module, "_write_file_atomic", flaky_write)
        client = StorageClient(
            local_adapter,
            retry_policy=RetryPolicy(max_retries=3, base_delay_seconds=0.1, jitter_ratio=0.0),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

        writer = client.open_write("k")
        writer.write(b"streamed")
        metadata = writer.commit()

        assert metadata.size_bytes == 8
        assert fake_clock.sleeps == pytest.approx([0.1])
        assert client.get("k").body == b"streamed"
        assert list((local_adapter.root_path / "staging").iterdir()) == []
        assert len(_version_files(local_adapter)) == 2

    def test_put_retried_after_pointer_failure(
        self,
        local_adapter: LocalDiskAdapter,
        monkeypatch: pytest.MonkeyPatch,
        fake_clock: Any,
    ) -> None:
        original = local_module._write_file_atomic
        failed: list[Path] = []

        def flaky_write(path: Path, data: bytes) -> None:
            if path.name == "_latest" and not failed:
                failed.append(path)
                raise OSError(errno.EIO, "I/O error")
            original(path, data)

        monkeypatch.setattr(local_module, "_write_file_atomic", flaky_write)
        client = StorageClient(
            local_adapter,
            retry_policy=RetryPolicy(max_retries=3, base_delay_seconds=0.1, jitter_ratio=0.0),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

        client.put("k", b"v1")

        assert failed
        assert client.get("k").body == b"v1"
        assert len(_version_files(local_adapter)) == 2

    def test_eio_on_replace_is_transient(
        self,
        local_adapter: LocalDiskAdapter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def flaky_replace(src: object, dst: object) -> None:
            raise OSError(errno.EIO, "I/O error")

        monkeypatch.setattr("storageio.adapters.local.os.replace", flaky_replace)
        with pytest.raises(TransientStorageError):
            local_adapter.write_full(normalize("k"), b"x")
        monkeypatch.undo()
        with pytest.raises(ObjectNotFoundError):
            local_adapter.stat(normalize("k"))
