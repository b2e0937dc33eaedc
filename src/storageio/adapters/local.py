"""Local filesystem storage backend.

Objects are stored in a directory structure:
    {root}/store.json                       # pins the store's hash algorithm
    {root}/staging/{uuid}.tmp               # uncommitted bytes
    {root}/objects/{hh}/{key_sha256}/
        _latest                             # pointer to the committed version
        {version}.data                      # content
        {version}.meta.json                 # metadata descriptor

Every file is written to a temporary name and moved into place with
``os.replace``. Swapping ``_latest`` is the commit point; older versions
are pruned after it. A reader that loses a race with pruning re-reads the
pointer and opens the newer version instead.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO, Final

from storageio.adapters.base import (
    BackendAdapter,
    ObjectReader,
    ObjectWriter,
    filter_prefix,
    paginate,
)
from storageio.errors import (
    ConflictError,
    CorruptObjectError,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    StorageConfigError,
    TransientStorageError,
    map_os_error,
)
from storageio.keys import StorageKey
from storageio.models import HashAlgorithm, ListPage, ObjectMetadata
from storageio.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

BACKEND_NAME = "local"

STORE_FORMAT_VERSION: Final[int] = 1

_STORE_MARKER = "store.json"
_OBJECTS_DIR = "objects"
_STAGING_DIR = "staging"
_LATEST_POINTER = "_latest"
_METADATA_SUFFIX = ".meta.json"
_CONTENT_SUFFIX = ".data"
_LOCK_STRIPES = 64
_MAX_POINTER_CHASES = 8


def _key_hash(key: StorageKey) -> str:
    return hashlib.sha256(str(key).encode("utf-8")).hexdigest()


def _write_file_atomic(path: Path, data: bytes) -> None:
    """Write ``data`` next to ``path`` and rename it into place."""
    tmp_file = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp_file.write_bytes(data)
        os.replace(tmp_file, path)
    except OSError:
        tmp_file.unlink(missing_ok=True)
        raise


class _LocalWriter(ObjectWriter):
    """Streams chunks into a staging file; commit moves it into the store."""

    def __init__(
        self,
        adapter: LocalDiskAdapter,
        key: StorageKey,
        staging_file: Path,
        *,
        tags: dict[str, str] | None,
    ) -> None:
        super().__init__(key, algorithm=adapter.hash_algorithm, tags=tags)
        self._adapter = adapter
        self._staging_file = staging_file
        self._fh: BinaryIO | None = staging_file.open("wb")

    def _write_chunk(self, data: bytes) -> None:
        if self._fh is None:
            raise ValueError("I/O operation on closed writer")
        try:
            self._fh.write(data)
        except OSError as e:
            raise map_os_error(e, key=str(self.key), backend=BACKEND_NAME) from e

    def _commit(self) -> ObjectMetadata:
        try:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
        except OSError as e:
            raise map_os_error(e, key=str(self.key), backend=BACKEND_NAME) from e

        metadata = ObjectMetadata(
            key=self.key,
            size_bytes=self.size_bytes,
            content_hash=self.content_hash(),
            hash_algorithm=self._algorithm,
            last_modified=self._adapter._now(),
            tags=self.tags,
        )
        return self._adapter._publish(self.key, self._staging_file, metadata)

    def _abort(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
        self._staging_file.unlink(missing_ok=True)


class LocalDiskAdapter(BackendAdapter):
    """Filesystem-based object storage implementation.

    Object directories are named by the SHA256 of the key, so user keys
    never become filesystem paths.
    """

    def __init__(
        self,
        root_path: str | Path,
        *,
        hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256,
    ) -> None:
        """Open (or initialize) a store rooted at ``root_path``.

        Args:
            root_path: Store root directory; created if missing.
            hash_algorithm: Content hash algorithm. Must match the algorithm
                the store was created with.

        Raises:
            StorageConfigError: If the store was created with another
                algorithm or its marker is unreadable.
        """
        self._root = Path(root_path).resolve()
        self._hash_algorithm = hash_algorithm
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

        try:
            (self._root / _OBJECTS_DIR).mkdir(parents=True, exist_ok=True)
            (self._root / _STAGING_DIR).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageConfigError(f"Cannot create store root {self._root}: {e}") from e

        self._check_store_marker()
        logger.debug("LocalDiskAdapter initialized with root=%s", self._root)

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return BACKEND_NAME

    @property
    def hash_algorithm(self) -> HashAlgorithm:
        """Return the content hash algorithm of this store."""
        return self._hash_algorithm

    @property
    def root_path(self) -> Path:
        """Return the store root directory."""
        return self._root

    def _check_store_marker(self) -> None:
        marker = self._root / _STORE_MARKER
        try:
            data = json.loads(marker.read_text(encoding="utf-8"))
        except FileNotFoundError:
            descriptor = {
                "format_version": STORE_FORMAT_VERSION,
                "hash_algorithm": str(self._hash_algorithm),
            }
            try:
                _write_file_atomic(marker, json.dumps(descriptor, indent=2).encode("utf-8"))
            except OSError as e:
                raise StorageConfigError(f"Cannot write store marker: {e}") from e
            return
        except (OSError, json.JSONDecodeError) as e:
            raise StorageConfigError(f"Unreadable store marker {marker}: {e}") from e

        stored = data.get("hash_algorithm") if isinstance(data, dict) else None
        if stored != str(self._hash_algorithm):
            raise StorageConfigError(
                f"Store at {self._root} uses hash algorithm '{stored}', "
                f"not '{self._hash_algorithm}'"
            )

    def _now(self) -> datetime:
        return datetime.now(UTC)

    def _object_dir(self, key: StorageKey) -> Path:
        digest = _key_hash(key)
        return self._root / _OBJECTS_DIR / digest[:2] / digest

    def _lock_for(self, key: StorageKey) -> threading.Lock:
        return self._locks[int(_key_hash(key)[:8], 16) % _LOCK_STRIPES]

    def _new_staging_file(self) -> Path:
        return self._root / _STAGING_DIR / f"{uuid.uuid4().hex}.tmp"

    def _read_pointer(self, obj_dir: Path) -> str | None:
        try:
            version = (obj_dir / _LATEST_POINTER).read_text(encoding="utf-8").strip()
        except (FileNotFoundError, NotADirectoryError):
            return None
        return version or None

    def _read_descriptor(self, meta_file: Path) -> ObjectMetadata:
        """Load a metadata descriptor; missing files raise FileNotFoundError."""
        raw = meta_file.read_text(encoding="utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptObjectError(
                f"Unreadable metadata descriptor: {e}",
                backend=BACKEND_NAME,
            ) from e
        if not isinstance(data, dict):
            raise CorruptObjectError("Metadata descriptor is not an object", backend=BACKEND_NAME)
        return ObjectMetadata.from_dict(data)

    def _current_metadata(self, obj_dir: Path) -> ObjectMetadata | None:
        version = self._read_pointer(obj_dir)
        if version is None:
            return None
        return self._read_descriptor(obj_dir / f"{version}{_METADATA_SUFFIX}")

    def _publish(
        self,
        key: StorageKey,
        staged: Path,
        metadata: ObjectMetadata,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> ObjectMetadata:
        """Move a staged body into the store and swap the pointer to it."""
        obj_dir = self._object_dir(key)
        version = uuid.uuid4().hex
        try:
            with self._lock_for(key):
                current = self._current_metadata(obj_dir)
                if if_none_match and current is not None:
                    raise ObjectAlreadyExistsError(key=str(key), backend=BACKEND_NAME)
                if if_match is not None:
                    actual = current.content_hash if current is not None else None
                    if actual != if_match:
                        raise ConflictError(
                            "Content hash precondition failed",
                            key=str(key),
                            backend=BACKEND_NAME,
                            expected_hash=if_match,
                            actual_hash=actual,
                        )

                obj_dir.mkdir(parents=True, exist_ok=True)
                data_file = obj_dir / f"{version}{_CONTENT_SUFFIX}"
                meta_file = obj_dir / f"{version}{_METADATA_SUFFIX}"
                os.replace(staged, data_file)
                try:
                    _write_file_atomic(
                        meta_file,
                        json.dumps(metadata.to_dict(), indent=2).encode("utf-8"),
                    )
                    _write_file_atomic(obj_dir / _LATEST_POINTER, version.encode("utf-8"))
                except OSError:
                    # pointer unchanged: hand the body back so the publish can be retried
                    self._unpublish(staged, data_file, meta_file)
                    raise

                try:
                    self._prune(obj_dir, keep=version)
                except OSError as e:
                    # committed already; leftovers go with the next commit
                    logger.warning("Could not prune old versions of key=%s: %s", key, e)
        except OSError as e:
            raise map_os_error(e, key=str(key), backend=BACKEND_NAME) from e

        logger.debug(
            "Stored object: key=%s version=%s size=%d hash=%s",
            key,
            version,
            metadata.size_bytes,
            metadata.content_hash,
        )
        return metadata

    def _unpublish(self, staged: Path, data_file: Path, meta_file: Path) -> None:
        """Undo a publish that failed before the pointer swap."""
        try:
            meta_file.unlink(missing_ok=True)
            os.replace(data_file, staged)
        except OSError as e:
            logger.warning("Could not restore staged body %s: %s", staged.name, e)

    def _prune(self, obj_dir: Path, *, keep: str) -> None:
        """Remove every version file except those of ``keep``."""
        for path in obj_dir.iterdir():
            name = path.name
            if name == _LATEST_POINTER or name.startswith(f"{keep}."):
                continue
            if name.endswith((_CONTENT_SUFFIX, _METADATA_SUFFIX)):
                path.unlink(missing_ok=True)

    def _open_latest(self, key: StorageKey) -> tuple[ObjectMetadata, BinaryIO]:
        obj_dir = self._object_dir(key)
        for _ in range(_MAX_POINTER_CHASES):
            version = self._read_pointer(obj_dir)
            if version is None:
                raise ObjectNotFoundError(key=str(key), backend=BACKEND_NAME)
            try:
                metadata = self._read_descriptor(obj_dir / f"{version}{_METADATA_SUFFIX}")
                stream = (obj_dir / f"{version}{_CONTENT_SUFFIX}").open("rb")
            except FileNotFoundError:
                if self._read_pointer(obj_dir) != version:
                    continue
                raise ObjectNotFoundError(
                    "Committed version is missing",
                    key=str(key),
                    backend=BACKEND_NAME,
                ) from None
            return metadata, stream
        raise TransientStorageError(
            "Object changed repeatedly during read",
            key=str(key),
            backend=BACKEND_NAME,
        )

    @traced_storage_operation("read")
    def read(self, key: StorageKey) -> ObjectReader:
        """Open the latest version of an object for reading."""
        try:
            metadata, stream = self._open_latest(key)
        except OSError as e:
            raise map_os_error(e, key=str(key), backend=BACKEND_NAME) from e
        return ObjectReader(metadata, stream, backend=BACKEND_NAME)

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
        metadata = ObjectMetadata.for_body(
            key,
            body,
            algorithm=self._hash_algorithm,
            tags=tags,
            last_modified=self._now(),
        )
        staged = self._new_staging_file()
        try:
            try:
                staged.write_bytes(body)
            except OSError as e:
                raise map_os_error(e, key=str(key), backend=BACKEND_NAME) from e
            return self._publish(
                key,
                staged,
                metadata,
                if_match=if_match,
                if_none_match=if_none_match,
            )
        finally:
            staged.unlink(missing_ok=True)

    @traced_storage_operation("write_stream")
    def write_stream(
        self,
        key: StorageKey,
        *,
        tags: dict[str, str] | None = None,
    ) -> ObjectWriter:
        """Open an incremental writer backed by a staging file."""
        try:
            return _LocalWriter(self, key, self._new_staging_file(), tags=tags)
        except OSError as e:
            raise map_os_error(e, key=str(key), backend=BACKEND_NAME) from e

    @traced_storage_operation("stat")
    def stat(self, key: StorageKey) -> ObjectMetadata:
        """Return metadata of an object."""
        obj_dir = self._object_dir(key)
        try:
            for _ in range(_MAX_POINTER_CHASES):
                version = self._read_pointer(obj_dir)
                if version is None:
                    break
                try:
                    return self._read_descriptor(obj_dir / f"{version}{_METADATA_SUFFIX}")
                except FileNotFoundError:
                    if self._read_pointer(obj_dir) == version:
                        break
        except OSError as e:
            raise map_os_error(e, key=str(key), backend=BACKEND_NAME) from e
        raise ObjectNotFoundError(key=str(key), backend=BACKEND_NAME)

    def _scan(self) -> list[ObjectMetadata]:
        """Collect the committed metadata of every object in the store."""
        found: list[ObjectMetadata] = []
        objects_root = self._root / _OBJECTS_DIR
        for bucket in objects_root.iterdir():
            if not bucket.is_dir():
                continue
            for obj_dir in bucket.iterdir():
                try:
                    metadata = self._current_metadata(obj_dir)
                except FileNotFoundError:
                    continue
                except CorruptObjectError as e:
                    logger.warning("Skipping unreadable descriptor in %s: %s", obj_dir, e)
                    continue
                if metadata is not None:
                    found.append(metadata)
        return found

    @traced_storage_operation("list_page")
    def list_page(
        self,
        prefix: StorageKey | None,
        *,
        page_token: str | None = None,
        limit: int | None = None,
    ) -> ListPage:
        """Return one page of objects under ``prefix``."""
        try:
            items = self._scan()
        except OSError as e:
            raise map_os_error(e, key=str(prefix) if prefix else None, backend=BACKEND_NAME) from e
        return paginate(filter_prefix(items, prefix), page_token=page_token, limit=limit)

    @traced_storage_operation("delete")
    def delete(self, key: StorageKey) -> None:
        """Delete an object and all of its versions."""
        obj_dir = self._object_dir(key)
        try:
            with self._lock_for(key):
                if self._read_pointer(obj_dir) is None:
                    raise ObjectNotFoundError(key=str(key), backend=BACKEND_NAME)
                (obj_dir / _LATEST_POINTER).unlink()
                shutil.rmtree(obj_dir, ignore_errors=True)
        except OSError as e:
            raise map_os_error(e, key=str(key), backend=BACKEND_NAME) from e
        logger.debug("Deleted object: key=%s", key)
