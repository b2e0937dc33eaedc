"""Storage client facade.

The single entry point for callers. Every method:
1. Normalizes the key (InvalidKeyError on bad input)
2. Invokes the adapter through the retry engine under a deadline
3. Surfaces exactly one taxonomy error on failure

Deadlines:
    Every method accepts ``timeout`` (seconds). Without one, the retry
    policy's budget bounds the call. Deadlines are checked at each retry
    boundary and, for streams, at each chunk. A streaming commit that has
    started is never cancelled.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from types import TracebackType
from typing import TypeVar

from storageio.adapters.base import DEFAULT_CHUNK_SIZE, BackendAdapter, ObjectReader, ObjectWriter
from storageio.config import StorageConfig
from storageio.errors import CorruptObjectError, ObjectNotFoundError, ObjectStorageError
from storageio.keys import StorageKey, normalize, normalize_prefix
from storageio.models import (
    FolderListing,
    ListPage,
    ObjectMetadata,
    StoredObject,
    compute_digest,
    new_hasher,
    validate_tags,
)
from storageio.retry import Deadline, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Body = bytes | bytearray | memoryview | str


def _as_bytes(body: Body) -> bytes:
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, bytes | bytearray | memoryview):
        return bytes(body)
    raise TypeError(f"body must be bytes or str, got {type(body).__name__}")


class VerifyingReader:
    """Streaming read handle that checks the content hash at end of stream.

    Raises CorruptObjectError from the read that reaches EOF if the bytes
    do not match the metadata the stream was opened with.
    """

    def __init__(self, reader: ObjectReader, deadline: Deadline) -> None:
        self._reader = reader
        self._deadline = deadline
        self._hasher = new_hasher(reader.metadata.hash_algorithm)
        self._size = 0
        self._verified = False

    @property
    def metadata(self) -> ObjectMetadata:
        """Metadata captured when the stream was opened."""
        return self._reader.metadata

    @property
    def closed(self) -> bool:
        return self._reader.closed

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes, checking the deadline first."""
        key = str(self.metadata.key)
        self._deadline.check("read", key=key)
        if size == 0:
            return b""
        data = self._reader.read(size)
        self._hasher.update(data)
        self._size += len(data)
        if size < 0 or not data:
            self._verify()
        return data

    def iter_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the remaining body in chunks of at most ``chunk_size`` bytes."""
        while True:
            chunk = self.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def _verify(self) -> None:
        if self._verified:
            return
        self._verified = True
        actual = str(self._hasher.hexdigest())
        if actual != self.metadata.content_hash or self._size != self.metadata.size_bytes:
            raise CorruptObjectError(
                key=str(self.metadata.key),
                expected_hash=self.metadata.content_hash,
                actual_hash=actual,
            )

    def close(self) -> None:
        self._reader.close()

    def __enter__(self) -> VerifyingReader:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class ClientWriter:
    """Streaming write handle returned by ``StorageClient.open_write``.

    ``write`` honours the call deadline; ``commit`` is retried on transient
    failures but is never cut short by the deadline once it has started.
    Leaving a ``with`` block without committing aborts the write.
    """

    def __init__(
        self,
        writer: ObjectWriter,
        deadline: Deadline,
        commit: Callable[[], ObjectMetadata],
    ) -> None:
        self._writer = writer
        self._deadline = deadline
        self._commit = commit

    @property
    def key(self) -> StorageKey:
        return self._writer.key

    @property
    def closed(self) -> bool:
        return self._writer.closed

    def write(self, data: Body) -> int:
        """Append ``data``; raises StorageUnavailableError past the deadline."""
        self._deadline.check("write", key=str(self.key))
        return self._writer.write(_as_bytes(data))

    def commit(self) -> ObjectMetadata:
        """Atomically publish everything written so far."""
        return self._commit()

    def abort(self) -> None:
        """Discard the pending object."""
        self._writer.abort()

    def __enter__(self) -> ClientWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.abort()


class StorageClient:
    """Facade composing key normalization, one adapter and the retry engine.

    The client does not own the adapter: closing the adapter is the
    caller's responsibility.

    Example:
        >>> client = StorageClient(InMemoryAdapter())
        >>> client.put("a/b/c.txt", b"hello").size_bytes
        5
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        *,
        retry_policy: RetryPolicy | None = None,
        config: StorageConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            adapter: Backend adapter to delegate to.
            retry_policy: Retry policy; derived from ``config`` when omitted.
            config: Storage configuration used to derive the retry policy.
            sleep: Sleep function used between retries (injectable for tests).
            clock: Monotonic clock used for deadlines (injectable for tests).
            rng: Random source for jitter.
        """
        if retry_policy is None:
            retry_policy = RetryPolicy.from_config(config) if config else RetryPolicy()
        self._adapter = adapter
        self._policy = retry_policy
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    @property
    def adapter(self) -> BackendAdapter:
        return self._adapter

    @property
    def backend_name(self) -> str:
        """Return the identifier of the underlying backend."""
        return self._adapter.backend_name

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    def _deadline(self, timeout: float | None) -> Deadline:
        if timeout is None:
            timeout = self._policy.budget_seconds
        return Deadline(timeout, clock=self._clock)

    def _call(
        self,
        fn: Callable[[], T],
        *,
        operation: str,
        key: StorageKey | None,
        deadline: Deadline,
    ) -> T:
        return call_with_retry(
            fn,
            self._policy,
            operation=operation,
            key=str(key) if key is not None else None,
            deadline=deadline,
            sleep=self._sleep,
            rng=self._rng,
        )

    def get(self, key: str | StorageKey, *, timeout: float | None = None) -> StoredObject:
        """Read an object and verify its content hash.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            CorruptObjectError: If the body does not match its metadata.
            StorageUnavailableError: If retries or the deadline run out.
        """
        k = normalize(key)
        deadline = self._deadline(timeout)

        def attempt() -> StoredObject:
            with self._adapter.read(k) as reader:
                return StoredObject(metadata=reader.metadata, body=reader.read())

        stored = self._call(attempt, operation="get", key=k, deadline=deadline)
        metadata = stored.metadata
        actual = compute_digest(stored.body, metadata.hash_algorithm)
        if actual != metadata.content_hash or len(stored.body) != metadata.size_bytes:
            raise CorruptObjectError(
                key=str(k),
                backend=self.backend_name,
                expected_hash=metadata.content_hash,
                actual_hash=actual,
            )
        logger.debug("get key=%s size=%d", k, metadata.size_bytes)
        return stored

    def open_read(self, key: str | StorageKey, *, timeout: float | None = None) -> VerifyingReader:
        """Open an object for streaming reads.

        The returned reader checks ``timeout`` at every chunk and verifies
        the content hash when the end of the stream is reached.
        """
        k = normalize(key)
        deadline = self._deadline(timeout)
        reader = self._call(
            lambda: self._adapter.read(k),
            operation="open_read",
            key=k,
            deadline=deadline,
        )
        return VerifyingReader(reader, deadline)

    def put(
        self,
        key: str | StorageKey,
        body: Body,
        *,
        tags: dict[str, str] | None = None,
        overwrite: bool = True,
        timeout: float | None = None,
    ) -> ObjectMetadata:
        """Store an object atomically.

        Args:
            key: Object key.
            body: Object content; ``str`` is stored as UTF-8.
            tags: Custom tags replacing any previous ones.
            overwrite: If False, fail with ObjectAlreadyExistsError when the
                object already exists.
            timeout: Bound on total call time, in seconds.
        """
        k = normalize(key)
        data = _as_bytes(body)
        checked_tags = validate_tags(tags)
        metadata = self._call(
            lambda: self._adapter.write_full(
                k,
                data,
                tags=checked_tags,
                if_none_match=not overwrite,
            ),
            operation="put",
            key=k,
            deadline=self._deadline(timeout),
        )
        logger.debug("put key=%s size=%d hash=%s", k, metadata.size_bytes, metadata.content_hash)
        return metadata

    def put_if_match(
        self,
        key: str | StorageKey,
        body: Body,
        expected_hash: str,
        *,
        tags: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ObjectMetadata:
        """Store an object only if its current content hash is ``expected_hash``.

        Raises:
            ConflictError: If the object is absent or its hash differs.
        """
        k = normalize(key)
        data = _as_bytes(body)
        checked_tags = validate_tags(tags)
        return self._call(
            lambda: self._adapter.conditional_write(k, data, expected_hash, tags=checked_tags),
            operation="put_if_match",
            key=k,
            deadline=self._deadline(timeout),
        )

    def open_write(
        self,
        key: str | StorageKey,
        *,
        tags: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ClientWriter:
        """Open a streaming writer; nothing is visible until ``commit()``."""
        k = normalize(key)
        checked_tags = validate_tags(tags)
        deadline = self._deadline(timeout)
        writer = self._call(
            lambda: self._adapter.write_stream(k, tags=checked_tags),
            operation="open_write",
            key=k,
            deadline=deadline,
        )

        def commit() -> ObjectMetadata:
            # Started commits are bounded by attempts only, never by the deadline.
            return self._call(writer.commit, operation="commit", key=k, deadline=Deadline.never())

        return ClientWriter(writer, deadline, commit)

    def delete(self, key: str | StorageKey, *, timeout: float | None = None) -> bool:
        """Delete an object. Deleting an absent object is not an error.

        Returns:
            True if an object was removed, False if none existed.
        """
        k = normalize(key)
        try:
            self._call(
                lambda: self._adapter.delete(k),
                operation="delete",
                key=k,
                deadline=self._deadline(timeout),
            )
        except ObjectNotFoundError:
            logger.debug("delete key=%s: already absent", k)
            return False
        logger.debug("delete key=%s", k)
        return True

    def exists(self, key: str | StorageKey, *, timeout: float | None = None) -> bool:
        """Return True if an object is stored under ``key``."""
        try:
            self.stat_metadata(key, timeout=timeout)
        except ObjectNotFoundError:
            return False
        return True

    def stat_metadata(
        self,
        key: str | StorageKey,
        *,
        timeout: float | None = None,
    ) -> ObjectMetadata:
        """Return an object's metadata without reading its body."""
        k = normalize(key)
        return self._call(
            lambda: self._adapter.stat(k),
            operation="stat",
            key=k,
            deadline=self._deadline(timeout),
        )

    def list_page(
        self,
        prefix: str | StorageKey | None = None,
        *,
        page_token: str | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> ListPage:
        """Return one page of objects under ``prefix`` plus a continuation token."""
        p = normalize_prefix(prefix)
        if limit is not None and limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        return self._call(
            lambda: self._adapter.list_page(p, page_token=page_token, limit=limit),
            operation="list",
            key=p,
            deadline=self._deadline(timeout),
        )

    def list(
        self,
        prefix: str | StorageKey | None = None,
        *,
        timeout: float | None = None,
    ) -> Iterator[ObjectMetadata]:
        """Lazily iterate every object under ``prefix``, ordered by key.

        Pages are fetched on demand; ``timeout`` bounds each page fetch.
        """
        p = normalize_prefix(prefix)
        return self._iter_objects(p, timeout)

    def _iter_objects(
        self,
        prefix: StorageKey | None,
        timeout: float | None,
    ) -> Iterator[ObjectMetadata]:
        token: str | None = None
        while True:
            page = self.list_page(prefix, page_token=token, timeout=timeout)
            yield from page.items
            if page.next_token is None:
                return
            token = page.next_token

    def list_folder(
        self,
        prefix: str | StorageKey | None = None,
        *,
        timeout: float | None = None,
    ) -> FolderListing:
        """List the immediate children of a virtual directory.

        Objects directly under ``prefix`` are returned as files; deeper
        objects are grouped into their first-level sub-directory.
        """
        p = normalize_prefix(prefix)
        depth = len(p) if p is not None else 0
        files: list[ObjectMetadata] = []
        folders: dict[tuple[str, ...], StorageKey] = {}
        for metadata in self._iter_objects(p, timeout):
            rest = metadata.key.segments[depth:]
            if not rest:
                continue
            if len(rest) == 1:
                files.append(metadata)
            else:
                segments = metadata.key.segments[: depth + 1]
                folders.setdefault(segments, StorageKey(segments))
        return FolderListing(
            prefix=p,
            files=files,
            folders=[folders[s] for s in sorted(folders)],
        )

    def health_check(self, *, timeout: float | None = None) -> bool:
        """Return True if the backend answers a minimal listing request."""
        try:
            self.list_page(None, limit=1, timeout=timeout)
        except ObjectStorageError as e:
            logger.warning("Health check failed for backend=%s: %s", self.backend_name, e)
            return False
        return True
