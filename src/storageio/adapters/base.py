"""Backend adapter interface.

Provides the BackendAdapter contract that every concrete store implements,
and the handle types returned by streaming reads and writes.
"""

from __future__ import annotations

import base64
import binascii
from abc import ABC, abstractmethod
from collections.abc import Iterator
from types import TracebackType
from typing import Any, BinaryIO, Final

from storageio.errors import InvalidKeyError, map_os_error
from storageio.keys import StorageKey, is_prefix_of, normalize
from storageio.models import HashAlgorithm, ListPage, ObjectMetadata, new_hasher

DEFAULT_CHUNK_SIZE: Final[int] = 64 * 1024
DEFAULT_PAGE_SIZE: Final[int] = 1000


class ObjectReader:
    """Readable handle over one committed version of an object.

    The handle owns the underlying stream; callers must close it, ideally
    with ``with``. ``metadata`` describes the version the stream belongs to.
    """

    def __init__(self, metadata: ObjectMetadata, stream: BinaryIO, *, backend: str) -> None:
        self.metadata = metadata
        self._stream = stream
        self._backend = backend
        self._closed = False

    @property
    def closed(self) -> bool:
        """Return True once the handle has been released."""
        return self._closed

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes (all remaining bytes if negative)."""
        if self._closed:
            raise ValueError("I/O operation on closed reader")
        try:
            return self._stream.read(size)
        except OSError as e:
            raise map_os_error(e, key=str(self.metadata.key), backend=self._backend) from e

    def iter_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the remaining body in chunks of at most ``chunk_size`` bytes."""
        while True:
            chunk = self.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        """Release the underlying stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._stream.close()

    def __enter__(self) -> ObjectReader:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class ObjectWriter(ABC):
    """Incremental write handle, finalized atomically by ``commit``.

    Bytes written before ``commit`` are never visible to readers. A failed
    ``commit`` leaves the handle open so the commit may be retried; ``abort``
    discards everything. Leaving a ``with`` block without committing aborts.
    """

    def __init__(
        self,
        key: StorageKey,
        *,
        algorithm: HashAlgorithm,
        tags: dict[str, str] | None = None,
    ) -> None:
        self.key = key
        self.tags = dict(tags or {})
        self._algorithm = algorithm
        self._hasher = new_hasher(algorithm)
        self._size = 0
        self._committed: ObjectMetadata | None = None
        self._aborted = False

    @property
    def closed(self) -> bool:
        """Return True after a successful commit or an abort."""
        return self._committed is not None or self._aborted

    @property
    def size_bytes(self) -> int:
        """Return the number of bytes written so far."""
        return self._size

    def content_hash(self) -> str:
        """Return the digest of the bytes written so far."""
        return str(self._hasher.hexdigest())

    def write(self, data: bytes) -> int:
        """Append ``data`` to the pending object."""
        if self.closed:
            raise ValueError("I/O operation on closed writer")
        self._write_chunk(data)
        self._hasher.update(data)
        self._size += len(data)
        return len(data)

    def commit(self) -> ObjectMetadata:
        """Atomically publish the written bytes and return their metadata."""
        if self._committed is not None:
            return self._committed
        if self._aborted:
            raise ValueError("Cannot commit an aborted writer")
        self._committed = self._commit()
        return self._committed

    def abort(self) -> None:
        """Discard the pending object. Idempotent; no-op after commit."""
        if self.closed:
            return
        self._aborted = True
        self._abort()

    def __enter__(self) -> ObjectWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.abort()

    @abstractmethod
    def _write_chunk(self, data: bytes) -> None: ...

    @abstractmethod
    def _commit(self) -> ObjectMetadata: ...

    @abstractmethod
    def _abort(self) -> None: ...


def encode_page_token(key: StorageKey) -> str:
    """Encode the last key of a page as an opaque continuation token."""
    return base64.urlsafe_b64encode(str(key).encode("utf-8")).decode("ascii")


def decode_page_token(token: str) -> StorageKey:
    """Decode a continuation token produced by ``encode_page_token``."""
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidKeyError("Invalid page token") from e
    return normalize(raw)


def paginate(
    items: list[ObjectMetadata],
    *,
    page_token: str | None,
    limit: int | None,
) -> ListPage:
    """Cut one page out of ``items`` (which must be sorted by key)."""
    if page_token is not None:
        after = decode_page_token(page_token).segments
        items = [m for m in items if m.key.segments > after]
    size = limit or DEFAULT_PAGE_SIZE
    page = items[:size]
    next_token = encode_page_token(page[-1].key) if len(items) > size else None
    return ListPage(items=page, next_token=next_token)


class BackendAdapter(ABC):
    """Abstract base class for storage backends.

    All implementations must provide:
    - Atomic full and streaming writes (no partial object is ever visible)
    - Conditional writes on the current content hash
    - Errors expressed only through the storage error taxonomy
    - ``read``/``write_full``/``delete``/``stat`` safe for concurrent callers

    Implementations:
    - InMemoryAdapter: in-process arena (deterministic testing)
    - LocalDiskAdapter: local filesystem
    - RemoteObjectStoreAdapter: HTTP object API
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier (e.g., "memory", "local", "remote")."""
        ...

    @property
    @abstractmethod
    def hash_algorithm(self) -> HashAlgorithm:
        """Return the content hash algorithm of this store."""
        ...

    @abstractmethod
    def read(self, key: StorageKey) -> ObjectReader:
        """Open the latest version of an object for reading.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            TransientStorageError: On a retryable backend failure.
            StorageUnavailableError: If the backend cannot serve the read.
        """
        ...

    @abstractmethod
    def write_full(
        self,
        key: StorageKey,
        body: bytes,
        *,
        tags: dict[str, str] | None = None,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> ObjectMetadata:
        """Store an object atomically.

        Args:
            key: Object key.
            body: Object content.
            tags: Custom tags replacing any previous ones.
            if_match: Expected current content hash; write only if it matches.
            if_none_match: Write only if no object exists under ``key``.

        Returns:
            Metadata of the stored object.

        Raises:
            ConflictError: If ``if_match`` does not match the current object.
            ObjectAlreadyExistsError: If ``if_none_match`` and the object exists.
            PermissionDeniedError: If the backend refuses the write.
            TransientStorageError: On a retryable backend failure.
        """
        ...

    @abstractmethod
    def write_stream(
        self,
        key: StorageKey,
        *,
        tags: dict[str, str] | None = None,
    ) -> ObjectWriter:
        """Open an incremental writer committed atomically by ``commit()``."""
        ...

    @abstractmethod
    def stat(self, key: StorageKey) -> ObjectMetadata:
        """Return metadata of an object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        ...

    @abstractmethod
    def list_page(
        self,
        prefix: StorageKey | None,
        *,
        page_token: str | None = None,
        limit: int | None = None,
    ) -> ListPage:
        """Return one page of objects under ``prefix``, ordered by key."""
        ...

    @abstractmethod
    def delete(self, key: StorageKey) -> None:
        """Delete an object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        ...

    def list(self, prefix: StorageKey | None = None) -> Iterator[ObjectMetadata]:
        """Lazily iterate all objects under ``prefix``.

        The sequence is finite and restartable from the beginning.
        """
        token: str | None = None
        while True:
            page = self.list_page(prefix, page_token=token)
            yield from page.items
            if page.next_token is None:
                return
            token = page.next_token

    def conditional_write(
        self,
        key: StorageKey,
        body: bytes,
        expected_hash: str,
        *,
        tags: dict[str, str] | None = None,
    ) -> ObjectMetadata:
        """Write only if the current content hash equals ``expected_hash``."""
        return self.write_full(key, body, tags=tags, if_match=expected_hash)

    def close(self) -> None:
        """Release adapter resources. Idempotent."""

    def __enter__(self) -> BackendAdapter:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def filter_prefix(
    items: list[ObjectMetadata],
    prefix: StorageKey | None,
) -> list[ObjectMetadata]:
    """Keep the items under ``prefix`` and sort them by key."""
    selected = [m for m in items if is_prefix_of(prefix, m.key)]
    selected.sort(key=lambda m: m.key.segments)
    return selected


__all__ = [
    "BackendAdapter",
    "ObjectReader",
    "ObjectWriter",
    "decode_page_token",
    "encode_page_token",
    "filter_prefix",
    "paginate",
]
