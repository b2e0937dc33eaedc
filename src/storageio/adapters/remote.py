"""Remote object store backend over HTTP.

Speaks a bucket/object JSON-over-HTTP API:

    GET|HEAD|PUT|DELETE {base}/v1/buckets/{bucket}/objects/{quoted key}
    GET {base}/v1/buckets/{bucket}/objects?prefix=&page_token=&max_results=

Object metadata travels in headers (ETag, Content-Length, X-Object-Hash,
X-Object-Hash-Algorithm, X-Object-Last-Modified, X-Object-Tags). HTTP
statuses and transport failures are translated into the storage error
taxonomy here; retrying is left to the caller's retry policy.

Conditional writes:
    native_conditional=True: HEAD reads the current ETag and content hash,
        the hash is compared locally, then PUT carries ``If-Match: <etag>``.
        The server rejects the PUT if the object changed in between.
    native_conditional=False: HEAD, compare, then an unconditional PUT.
        A concurrent writer landing between HEAD and PUT is overwritten
        silently. This window is small but not zero; callers that need
        strict compare-and-swap must use a server that honours If-Match.
"""

from __future__ import annotations

import io
import json
import logging
import tempfile
import urllib.parse
from collections.abc import Iterator
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import IO, Any, Final

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from storageio.adapters.base import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_PAGE_SIZE,
    BackendAdapter,
    ObjectReader,
    ObjectWriter,
)
from storageio.credentials import AnonymousCredential, Credential
from storageio.errors import (
    ConflictError,
    CorruptObjectError,
    InvalidKeyError,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    StorageUnavailableError,
    TransientStorageError,
    map_http_status,
)
from storageio.keys import StorageKey, is_prefix_of, normalize
from storageio.models import HashAlgorithm, ListPage, ObjectMetadata, compute_digest
from storageio.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

BACKEND_NAME = "remote"
USER_AGENT = "storageio/0.1"

HEADER_ETAG: Final[str] = "ETag"
HEADER_HASH: Final[str] = "X-Object-Hash"
HEADER_HASH_ALGORITHM: Final[str] = "X-Object-Hash-Algorithm"
HEADER_LAST_MODIFIED: Final[str] = "X-Object-Last-Modified"
HEADER_TAGS: Final[str] = "X-Object-Tags"

SPOOL_MAX_MEMORY_BYTES: Final[int] = 8 * 1024 * 1024
DEFAULT_TIMEOUT_SECONDS: Final[float] = 10.0


class RemoteObjectInfo(BaseModel):
    """One entry of a listing response."""

    model_config = ConfigDict(extra="ignore")

    key: str
    size_bytes: int = Field(ge=0)
    content_hash: str
    hash_algorithm: HashAlgorithm
    last_modified: datetime
    tags: dict[str, str] = Field(default_factory=dict)
    etag: str | None = None

    def to_metadata(self) -> ObjectMetadata:
        last_modified = self.last_modified
        if last_modified.tzinfo is None:
            last_modified = last_modified.replace(tzinfo=UTC)
        return ObjectMetadata(
            key=normalize(self.key),
            size_bytes=self.size_bytes,
            content_hash=self.content_hash,
            hash_algorithm=self.hash_algorithm,
            last_modified=last_modified,
            tags=dict(self.tags),
        )


class RemoteListResponse(BaseModel):
    """Body of a listing response."""

    model_config = ConfigDict(extra="ignore")

    items: list[RemoteObjectInfo] = Field(default_factory=list)
    next_page_token: str | None = None


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def _iter_file(fh: IO[bytes], chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    while True:
        chunk = fh.read(chunk_size)
        if not chunk:
            return
        yield chunk


class _RemoteWriter(ObjectWriter):
    """Spools chunks locally and uploads them with a single PUT on commit."""

    def __init__(
        self,
        adapter: RemoteObjectStoreAdapter,
        key: StorageKey,
        *,
        tags: dict[str, str] | None,
    ) -> None:
        super().__init__(key, algorithm=adapter.hash_algorithm, tags=tags)
        self._adapter = adapter
        self._spool: IO[bytes] | None = tempfile.SpooledTemporaryFile(
            max_size=SPOOL_MAX_MEMORY_BYTES
        )

    def _write_chunk(self, data: bytes) -> None:
        if self._spool is None:
            raise ValueError("I/O operation on closed writer")
        self._spool.write(data)

    def _commit(self) -> ObjectMetadata:
        if self._spool is None:
            raise ValueError("I/O operation on closed writer")
        self._spool.seek(0)
        metadata = self._adapter._put(
            self.key,
            _iter_file(self._spool),
            content_hash=self.content_hash(),
            size_bytes=self.size_bytes,
            tags=self.tags,
        )
        self._close_spool()
        return metadata

    def _abort(self) -> None:
        self._close_spool()

    def _close_spool(self) -> None:
        if self._spool is not None:
            self._spool.close()
            self._spool = None


class RemoteObjectStoreAdapter(BackendAdapter):
    """HTTP object store client bound to one bucket.

    The adapter never retries on its own. Transient statuses (408, 425, 429,
    5xx) and transport failures are raised as TransientStorageError, with
    any Retry-After hint attached, for the caller's retry policy to handle.
    """

    def __init__(
        self,
        base_url: str,
        bucket: str,
        *,
        credential: Credential | None = None,
        http_client: httpx.Client | None = None,
        hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256,
        request_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        native_conditional: bool = True,
    ) -> None:
        """Initialize the adapter.

        Args:
            base_url: API root, e.g. "https://objects.example.com".
            bucket: Bucket holding every object of this store.
            credential: Pre-obtained credential (anonymous if None).
            http_client: Optional httpx.Client for dependency injection (testing).
                An injected client is not closed by ``close()``.
            hash_algorithm: Content hash algorithm of the store.
            request_timeout_seconds: Timeout for a single HTTP request.
            native_conditional: Whether the server honours If-Match/If-None-Match.
        """
        if not base_url:
            raise ValueError("base_url must be non-empty")
        if not bucket:
            raise ValueError("bucket must be non-empty")
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._credential: Credential = credential or AnonymousCredential()
        self._hash_algorithm = hash_algorithm
        self._native_conditional = native_conditional
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=request_timeout_seconds)
        self._timeout = request_timeout_seconds

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return BACKEND_NAME

    @property
    def hash_algorithm(self) -> HashAlgorithm:
        """Return the content hash algorithm of this store."""
        return self._hash_algorithm

    @property
    def native_conditional(self) -> bool:
        """Return True if conditional writes are enforced by the server."""
        return self._native_conditional

    def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            self._client.close()

    def _objects_url(self) -> str:
        bucket = urllib.parse.quote(self._bucket, safe="")
        return f"{self._base_url}/v1/buckets/{bucket}/objects"

    def _object_url(self, key: StorageKey) -> str:
        return f"{self._objects_url()}/{urllib.parse.quote(str(key), safe='')}"

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        headers.update(self._credential.auth_headers())
        if extra:
            headers.update(extra)
        return headers

    def _request(
        self,
        method: str,
        url: str,
        *,
        key: StorageKey | None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        content: bytes | Iterator[bytes] | None = None,
    ) -> httpx.Response:
        """Send one request and translate failures into the storage taxonomy."""
        key_str = str(key) if key is not None else None
        try:
            response = self._client.request(
                method,
                url,
                headers=self._headers(headers),
                params=params,
                content=content,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientStorageError(
                f"{method} timed out: {type(e).__name__}",
                key=key_str,
                backend=BACKEND_NAME,
            ) from e
        except httpx.TransportError as e:
            raise TransientStorageError(
                f"{method} transport failure: {type(e).__name__}",
                key=key_str,
                backend=BACKEND_NAME,
            ) from e
        except httpx.HTTPError as e:
            raise StorageUnavailableError(
                f"{method} failed: {type(e).__name__}: {e}",
                key=key_str,
                backend=BACKEND_NAME,
            ) from e

        if response.status_code >= 400:
            raise map_http_status(
                response.status_code,
                key=key_str,
                backend=BACKEND_NAME,
                retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
                detail=_error_detail(response),
            )
        return response

    def _metadata_from_headers(
        self,
        key: StorageKey,
        headers: httpx.Headers,
        *,
        body_size: int | None = None,
    ) -> ObjectMetadata:
        key_str = str(key)
        content_hash = headers.get(HEADER_HASH)
        if not content_hash:
            raise CorruptObjectError(
                f"Response lacks {HEADER_HASH}",
                key=key_str,
                backend=BACKEND_NAME,
            )
        algorithm = headers.get(HEADER_HASH_ALGORITHM, str(self._hash_algorithm))
        if algorithm != str(self._hash_algorithm):
            raise CorruptObjectError(
                f"Object hashed with '{algorithm}', store uses '{self._hash_algorithm}'",
                key=key_str,
                backend=BACKEND_NAME,
            )

        try:
            # a received body wins over Content-Length, which is the encoded size under gzip
            size_header = headers.get("Content-Length")
            if body_size is not None:
                size_bytes = body_size
            elif size_header is not None:
                size_bytes = int(size_header)
            else:
                raise ValueError("missing Content-Length")

            raw_modified = headers.get(HEADER_LAST_MODIFIED)
            if raw_modified:
                last_modified = datetime.fromisoformat(raw_modified)
                if last_modified.tzinfo is None:
                    last_modified = last_modified.replace(tzinfo=UTC)
            else:
                last_modified = datetime.now(UTC)

            tags = json.loads(headers[HEADER_TAGS]) if HEADER_TAGS in headers else {}
            if not isinstance(tags, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in tags.items()
            ):
                raise ValueError("tags must map str to str")
        except (ValueError, json.JSONDecodeError) as e:
            raise CorruptObjectError(
                f"Malformed object metadata headers: {e}",
                key=key_str,
                backend=BACKEND_NAME,
            ) from e

        return ObjectMetadata(
            key=key,
            size_bytes=size_bytes,
            content_hash=content_hash.lower(),
            hash_algorithm=self._hash_algorithm,
            last_modified=last_modified,
            tags=tags,
        )

    def _head(self, key: StorageKey) -> tuple[ObjectMetadata, str | None] | None:
        """Return the current metadata and ETag, or None if the object is absent."""
        try:
            response = self._request("HEAD", self._object_url(key), key=key)
        except ObjectNotFoundError:
            return None
        return self._metadata_from_headers(key, response.headers), response.headers.get(
            HEADER_ETAG
        )

    def _put(
        self,
        key: StorageKey,
        content: bytes | Iterator[bytes],
        *,
        content_hash: str,
        size_bytes: int,
        tags: dict[str, str] | None,
        if_match_etag: str | None = None,
        if_none_match: bool = False,
    ) -> ObjectMetadata:
        """Upload a body with one PUT and return its metadata."""
        headers = {
            "Content-Type": "application/octet-stream",
            HEADER_HASH: content_hash,
            HEADER_HASH_ALGORITHM: str(self._hash_algorithm),
            HEADER_TAGS: json.dumps(tags or {}, sort_keys=True),
        }
        if if_match_etag is not None:
            headers["If-Match"] = if_match_etag
        if if_none_match:
            headers["If-None-Match"] = "*"

        try:
            response = self._request(
                "PUT",
                self._object_url(key),
                key=key,
                headers=headers,
                content=content,
            )
        except ConflictError as e:
            if if_none_match:
                raise ObjectAlreadyExistsError(key=str(key), backend=BACKEND_NAME) from e
            raise

        stored_hash = response.headers.get(HEADER_HASH)
        if stored_hash and stored_hash.lower() != content_hash:
            raise CorruptObjectError(
                "Server stored a body with a different content hash",
                key=str(key),
                backend=BACKEND_NAME,
                expected_hash=content_hash,
                actual_hash=stored_hash.lower(),
            )

        raw_modified = response.headers.get(HEADER_LAST_MODIFIED)
        try:
            last_modified = (
                datetime.fromisoformat(raw_modified) if raw_modified else datetime.now(UTC)
            )
        except ValueError:
            last_modified = datetime.now(UTC)
        if last_modified.tzinfo is None:
            last_modified = last_modified.replace(tzinfo=UTC)

        logger.debug("Uploaded object: key=%s size=%d hash=%s", key, size_bytes, content_hash)
        return ObjectMetadata(
            key=key,
            size_bytes=size_bytes,
            content_hash=content_hash,
            hash_algorithm=self._hash_algorithm,
            last_modified=last_modified,
            tags=dict(tags or {}),
        )

    @traced_storage_operation("read")
    def read(self, key: StorageKey) -> ObjectReader:
        """Download an object.

        The whole body is buffered so the connection is released before the
        reader is handed out.
        """
        response = self._request("GET", self._object_url(key), key=key)
        body = response.content
        metadata = self._metadata_from_headers(key, response.headers, body_size=len(body))
        return ObjectReader(metadata, io.BytesIO(body), backend=BACKEND_NAME)

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
        """Store an object with a single PUT."""
        etag: str | None = None
        if if_match is not None or (if_none_match and not self._native_conditional):
            current = self._head(key)
            if if_none_match and current is not None:
                raise ObjectAlreadyExistsError(key=str(key), backend=BACKEND_NAME)
            if if_match is not None:
                actual = current[0].content_hash if current is not None else None
                if actual != if_match:
                    raise ConflictError(
                        "Content hash precondition failed",
                        key=str(key),
                        backend=BACKEND_NAME,
                        expected_hash=if_match,
                        actual_hash=actual,
                    )
                if current is not None and self._native_conditional:
                    etag = current[1]
                    if etag is None:
                        logger.warning(
                            "Server sent no ETag for key=%s; conditional write is not atomic",
                            key,
                        )

        return self._put(
            key,
            body,
            content_hash=compute_digest(body, self._hash_algorithm),
            size_bytes=len(body),
            tags=tags,
            if_match_etag=etag,
            if_none_match=if_none_match and self._native_conditional,
        )

    @traced_storage_operation("write_stream")
    def write_stream(
        self,
        key: StorageKey,
        *,
        tags: dict[str, str] | None = None,
    ) -> ObjectWriter:
        """Open a writer that spools locally and uploads on commit."""
        return _RemoteWriter(self, key, tags=tags)

    @traced_storage_operation("stat")
    def stat(self, key: StorageKey) -> ObjectMetadata:
        """Return metadata of an object."""
        response = self._request("HEAD", self._object_url(key), key=key)
        return self._metadata_from_headers(key, response.headers)

    @traced_storage_operation("list_page")
    def list_page(
        self,
        prefix: StorageKey | None,
        *,
        page_token: str | None = None,
        limit: int | None = None,
    ) -> ListPage:
        """Return one page of objects under ``prefix``.

        The server matches prefixes by string; entries outside the
        segment-wise prefix are dropped here, so a page may be short.
        """
        params: dict[str, Any] = {"max_results": limit or DEFAULT_PAGE_SIZE}
        if prefix is not None:
            params["prefix"] = str(prefix)
        if page_token is not None:
            params["page_token"] = page_token

        response = self._request("GET", self._objects_url(), key=prefix, params=params)
        try:
            payload = RemoteListResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise StorageUnavailableError(
                f"Malformed listing response: {e}",
                key=str(prefix) if prefix is not None else None,
                backend=BACKEND_NAME,
            ) from e

        items: list[ObjectMetadata] = []
        for info in payload.items:
            try:
                items.append(info.to_metadata())
            except InvalidKeyError as e:
                logger.warning("Skipping listing entry with an invalid key: %s", e)

        selected = [
            m
            for m in items
            if is_prefix_of(prefix, m.key) and m.hash_algorithm == self._hash_algorithm
        ]
        selected.sort(key=lambda m: m.key.segments)
        return ListPage(items=selected, next_token=payload.next_page_token)

    @traced_storage_operation("delete")
    def delete(self, key: StorageKey) -> None:
        """Delete an object."""
        self._request("DELETE", self._object_url(key), key=key)
        logger.debug("Deleted object: key=%s", key)


def _error_detail(response: httpx.Response) -> str | None:
    """Extract a short error message from an error response body."""
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or None
    if isinstance(data, dict):
        message = data.get("message") or data.get("error")
        if isinstance(message, str):
            return message[:200]
    return response.reason_phrase or None


__all__ = [
    "RemoteListResponse",
    "RemoteObjectInfo",
    "RemoteObjectStoreAdapter",
    "parse_retry_after",
]
