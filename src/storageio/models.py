"""Object storage data models.

Provides typed value objects for object metadata, stored objects and
listing results, plus the content hashing helpers shared by all adapters.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final

from storageio.errors import CorruptObjectError
from storageio.keys import StorageKey, normalize

DESCRIPTOR_FORMAT_VERSION: Final[int] = 1

_SIZE_UNITS: Final[tuple[str, ...]] = ("bytes", "KB", "MB", "GB", "TB", "PB")


class HashAlgorithm(StrEnum):
    """Content hash algorithms; fixed for the lifetime of a store."""

    SHA256 = "sha256"
    SHA512 = "sha512"
    BLAKE2B = "blake2b"
    MD5 = "md5"


def new_hasher(algorithm: HashAlgorithm) -> Any:
    """Return a fresh hashlib object for ``algorithm``."""
    return hashlib.new(str(algorithm))


def compute_digest(data: bytes, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
    """Compute the hex digest of ``data``."""
    hasher = new_hasher(algorithm)
    hasher.update(data)
    return str(hasher.hexdigest())


def format_size(size_bytes: int) -> str:
    """Format a byte count for humans, e.g. ``1,455 bytes`` or ``1.8 GB``."""
    if size_bytes < 1024:
        return f"{size_bytes:,} bytes"
    value = float(size_bytes)
    unit = _SIZE_UNITS[0]
    for unit in _SIZE_UNITS[1:]:
        value /= 1024.0
        if value < 1024.0:
            break
    return f"{value:.1f} {unit}"


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata envelope attached to every stored object.

    Attributes:
        key: Normalized key of the object.
        size_bytes: Size of the body in bytes.
        content_hash: Hex digest of the body under ``hash_algorithm``.
        hash_algorithm: Algorithm used for ``content_hash``.
        last_modified: UTC timestamp of the last successful write.
        tags: Custom string tags.
    """

    key: StorageKey
    size_bytes: int
    content_hash: str
    hash_algorithm: HashAlgorithm
    last_modified: datetime
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def human_readable_size(self) -> str:
        """Return the size formatted for display."""
        return format_size(self.size_bytes)

    @classmethod
    def for_body(
        cls,
        key: StorageKey,
        body: bytes,
        *,
        algorithm: HashAlgorithm,
        tags: dict[str, str] | None = None,
        last_modified: datetime | None = None,
    ) -> ObjectMetadata:
        """Build metadata describing ``body`` as written now."""
        return cls(
            key=key,
            size_bytes=len(body),
            content_hash=compute_digest(body, algorithm),
            hash_algorithm=algorithm,
            last_modified=last_modified or datetime.now(UTC),
            tags=validate_tags(tags),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert metadata to the versioned descriptor for JSON serialization."""
        return {
            "format_version": DESCRIPTOR_FORMAT_VERSION,
            "key": str(self.key),
            "size_bytes": self.size_bytes,
            "content_hash": self.content_hash,
            "hash_algorithm": str(self.hash_algorithm),
            "last_modified": self.last_modified.isoformat(),
            "tags": dict(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObjectMetadata:
        """Create metadata from a descriptor.

        Raises:
            CorruptObjectError: If the descriptor is malformed or of an
                unsupported format version.
        """
        version = data.get("format_version", DESCRIPTOR_FORMAT_VERSION)
        if version != DESCRIPTOR_FORMAT_VERSION:
            raise CorruptObjectError(
                f"Unsupported descriptor format_version: {version}",
                key=str(data.get("key")),
            )
        try:
            last_modified = datetime.fromisoformat(str(data["last_modified"]))
            if last_modified.tzinfo is None:
                last_modified = last_modified.replace(tzinfo=UTC)
            return cls(
                key=normalize(str(data["key"])),
                size_bytes=int(data["size_bytes"]),
                content_hash=str(data["content_hash"]),
                hash_algorithm=HashAlgorithm(data.get("hash_algorithm", HashAlgorithm.SHA256)),
                last_modified=last_modified,
                tags=validate_tags(data.get("tags")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptObjectError(
                f"Malformed metadata descriptor: {e}",
                key=str(data.get("key")),
            ) from e


def validate_tags(tags: dict[str, str] | None) -> dict[str, str]:
    """Return a copy of ``tags`` after checking it maps str to str."""
    if not tags:
        return {}
    result: dict[str, str] = {}
    for name, value in tags.items():
        if not isinstance(name, str) or not isinstance(value, str):
            raise TypeError("tags must map str to str")
        result[name] = value
    return result


@dataclass(frozen=True)
class StoredObject:
    """A stored object with metadata and body content.

    Attributes:
        metadata: Object metadata.
        body: Object content as bytes.
    """

    metadata: ObjectMetadata
    body: bytes


@dataclass(frozen=True)
class ListPage:
    """One page of a listing.

    Attributes:
        items: Metadata of the objects on this page, ordered by key.
        next_token: Opaque continuation token, None on the last page.
    """

    items: list[ObjectMetadata]
    next_token: str | None = None


@dataclass(frozen=True)
class FolderListing:
    """Immediate children of a virtual directory.

    Attributes:
        prefix: The listed directory (None for the store root).
        files: Objects directly under the prefix.
        folders: Keys of sub-directories directly under the prefix.
    """

    prefix: StorageKey | None
    files: list[ObjectMetadata]
    folders: list[StorageKey]
