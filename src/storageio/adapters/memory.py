"""In-memory storage backend.

Keeps objects in a process-local arena keyed by normalized StorageKey. All
access is serialized by one lock per store, so conditional writes are a
single critical section. Intended for deterministic tests:

- ``inject_fault`` queues taxonomy errors for the next calls of an operation
- ``tamper`` replaces stored bytes without touching metadata
"""

from __future__ import annotations

import io
import logging
import threading
from collections import deque
from dataclasses import dataclass, replace

from storageio.adapters.base import (
    BackendAdapter,
    ObjectReader,
    ObjectWriter,
    filter_prefix,
    paginate,
)
from storageio.errors import (
    ConflictError,
    ErrorKind,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    ObjectStorageError,
    error_for_kind,
)
from storageio.keys import StorageKey
from storageio.models import HashAlgorithm, ListPage, ObjectMetadata
from storageio.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

BACKEND_NAME = "memory"

FAULT_OPERATIONS = frozenset(
    {"read", "write_full", "write_stream", "commit", "stat", "list_page", "delete"}
)


@dataclass(frozen=True)
class _Entry:
    metadata: ObjectMetadata
    body: bytes


def _detached(metadata: ObjectMetadata) -> ObjectMetadata:
    """Return a copy whose tags dict is not shared with the arena."""
    return replace(metadata, tags=dict(metadata.tags))


class _MemoryWriter(ObjectWriter):
    """Buffers chunks in memory and publishes them on commit."""

    def __init__(
        self,
        adapter: InMemoryAdapter,
        key: StorageKey,
        *,
        tags: dict[str, str] | None,
    ) -> None:
        super().__init__(key, algorithm=adapter.hash_algorithm, tags=tags)
        self._adapter = adapter
        self._buffer = bytearray()

    def _write_chunk(self, data: bytes) -> None:
        self._buffer.extend(data)

    def _commit(self) -> ObjectMetadata:
        self._adapter._raise_injected("commit", self.key)
        return self._adapter._store(self.key, bytes(self._buffer), tags=self.tags)

    def _abort(self) -> None:
        self._buffer.clear()


class InMemoryAdapter(BackendAdapter):
    """Process-local object store.

    Example:
        >>> adapter = InMemoryAdapter()
        >>> adapter.inject_fault("read", ErrorKind.TRANSIENT, times=2)
    """

    def __init__(self, *, hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> None:
        self._hash_algorithm = hash_algorithm
        self._objects: dict[StorageKey, _Entry] = {}
        self._faults: dict[str, deque[ObjectStorageError | ErrorKind]] = {}
        self._lock = threading.Lock()

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return BACKEND_NAME

    @property
    def hash_algorithm(self) -> HashAlgorithm:
        """Return the content hash algorithm of this store."""
        return self._hash_algorithm

    def inject_fault(
        self,
        operation: str,
        error: ObjectStorageError | ErrorKind,
        *,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` fail with ``error``.

        Args:
            operation: One of ``FAULT_OPERATIONS``.
            error: Exception to raise, or a kind to build a fresh exception from.
            times: Number of consecutive calls to fail.
        """
        if operation not in FAULT_OPERATIONS:
            raise ValueError(f"Unknown operation for fault injection: {operation}")
        if times < 1:
            raise ValueError(f"times must be >= 1, got {times}")
        with self._lock:
            queue = self._faults.setdefault(operation, deque())
            queue.extend([error] * times)

    def clear_faults(self) -> None:
        """Drop every pending injected fault."""
        with self._lock:
            self._faults.clear()

    def tamper(self, key: StorageKey, body: bytes) -> None:
        """Replace the stored bytes of ``key`` while keeping its metadata."""
        with self._lock:
            entry = self._objects.get(key)
            if entry is None:
                raise ObjectNotFoundError(key=str(key), backend=BACKEND_NAME)
            self._objects[key] = _Entry(metadata=entry.metadata, body=bytes(body))

    def _raise_injected(self, operation: str, key: StorageKey | None) -> None:
        with self._lock:
            queue = self._faults.get(operation)
            if not queue:
                return
            fault = queue.popleft()
        if isinstance(fault, ErrorKind):
            raise error_for_kind(
                fault,
                f"Injected {fault} fault in {operation}",
                key=str(key) if key is not None else None,
                backend=BACKEND_NAME,
            )
        raise fault

    def _store(
        self,
        key: StorageKey,
        body: bytes,
        *,
        tags: dict[str, str] | None = None,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> ObjectMetadata:
        metadata = ObjectMetadata.for_body(key, body, algorithm=self._hash_algorithm, tags=tags)
        with self._lock:
            current = self._objects.get(key)
            if if_none_match and current is not None:
                raise ObjectAlreadyExistsError(key=str(key), backend=BACKEND_NAME)
            if if_match is not None:
                actual = current.metadata.content_hash if current is not None else None
                if actual != if_match:
                    raise ConflictError(
                        "Content hash precondition failed",
                        key=str(key),
                        backend=BACKEND_NAME,
                        expected_hash=if_match,
                        actual_hash=actual,
                    )
            self._objects[key] = _Entry(metadata=metadata, body=bytes(body))

        logger.debug(
            "Stored object: key=%s size=%d hash=%s",
            key,
            metadata.size_bytes,
            metadata.content_hash,
        )
        return _detached(metadata)

    def _get_entry(self, key: StorageKey) -> _Entry:
        with self._lock:
            entry = self._objects.get(key)
        if entry is None:
            raise ObjectNotFoundError(key=str(key), backend=BACKEND_NAME)
        return entry

    @traced_storage_operation("read")
    def read(self, key: StorageKey) -> ObjectReader:
        """Open the latest version of an object for reading."""
        self._raise_injected("read", key)
        entry = self._get_entry(key)
        return ObjectReader(
            _detached(entry.metadata),
            io.BytesIO(entry.body),
            backend=BACKEND_NAME,
        )

    @traced_storage_operation("write_full")
    def write_full(
        self,
        key: StorageKey,
        body: bytes,
        *,
        tags: dict[str, str] | None = None,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> ObjectMetadata:
        """Store an object atomically."""
        self._raise_injected("write_full", key)
        return self._store(
            key,
            body,
            tags=tags,
            if_match=if_match,
            if_none_match=if_none_match,
        )

    @traced_storage_operation("write_stream")
    def write_stream(
        self,
        key: StorageKey,
        *,
        tags: dict[str, str] | None = None,
    ) -> ObjectWriter:
        """Open an incremental writer buffered in memory."""
        self._raise_injected("write_stream", key)
        return _MemoryWriter(self, key, tags=tags)

    @traced_storage_operation("stat")
    def stat(self, key: StorageKey) -> ObjectMetadata:
        """Return metadata of an object."""
        self._raise_injected("stat", key)
        return _detached(self._get_entry(key).metadata)

    @traced_storage_operation("list_page")
    def list_page(
        self,
        prefix: StorageKey | None,
        *,
        page_token: str | None = None,
        limit: int | None = None,
    ) -> ListPage:
        """Return one page of objects under ``prefix``."""
        self._raise_injected("list_page", prefix)
        with self._lock:
            snapshot = [_detached(entry.metadata) for entry in self._objects.values()]
        return paginate(filter_prefix(snapshot, prefix), page_token=page_token, limit=limit)

    @traced_storage_operation("delete")
    def delete(self, key: StorageKey) -> None:
        """Delete an object."""
        self._raise_injected("delete", key)
        with self._lock:
            if self._objects.pop(key, None) is None:
                raise ObjectNotFoundError(key=str(key), backend=BACKEND_NAME)
        logger.debug("Deleted object: key=%s", key)
