"""Object key model.

Canonicalizes user-supplied hierarchical names into backend-neutral keys.

Rules applied by ``normalize``:
- Split on "/"; empty segments from repeated, leading or trailing
  separators are dropped
- "." and ".." segments are rejected (no directory traversal)
- Segments containing control characters (including NUL) are rejected
- Backslashes are rejected rather than treated as separators
- A key must have at least one segment
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from storageio.errors import InvalidKeyError

SEPARATOR: Final[str] = "/"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_FORBIDDEN_SEGMENTS: Final[frozenset[str]] = frozenset({".", ".."})


@dataclass(frozen=True)
class StorageKey:
    """Normalized object key.

    Two keys are equal iff their segment tuples are equal. Instances should
    be obtained through ``normalize``; the constructor does not validate.

    Attributes:
        segments: Ordered, non-empty path segments.
    """

    segments: tuple[str, ...]

    def __str__(self) -> str:
        return SEPARATOR.join(self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    @property
    def name(self) -> str:
        """Return the last segment of the key."""
        return self.segments[-1]

    @property
    def parent(self) -> StorageKey | None:
        """Return the enclosing key, or None for a single-segment key."""
        if len(self.segments) == 1:
            return None
        return StorageKey(self.segments[:-1])


def _check_segment(segment: str, raw: str) -> None:
    if segment in _FORBIDDEN_SEGMENTS:
        raise InvalidKeyError(
            f"Invalid key: '{segment}' segments are not allowed",
            key=raw,
        )
    if _CONTROL_CHARS.search(segment):
        raise InvalidKeyError("Invalid key: control characters are not allowed", key=raw)
    if "\\" in segment:
        raise InvalidKeyError("Invalid key: backslash is not a valid separator", key=raw)


def normalize(raw: str | StorageKey) -> StorageKey:
    """Normalize a raw path into a StorageKey.

    Args:
        raw: User-supplied path (e.g. "a//b/c.txt") or an existing key.

    Returns:
        The normalized key. Normalizing a normalized key returns an equal key.

    Raises:
        InvalidKeyError: If the path is empty, contains "." or "..",
            control characters or backslashes.
    """
    if isinstance(raw, StorageKey):
        raw = str(raw)
    if not isinstance(raw, str):
        raise InvalidKeyError(f"Invalid key type: {type(raw).__name__}")

    segments = tuple(s for s in raw.split(SEPARATOR) if s)
    if not segments:
        raise InvalidKeyError("Invalid key: key has no segments", key=raw)

    for segment in segments:
        _check_segment(segment, raw)

    return StorageKey(segments)


def normalize_prefix(raw: str | StorageKey | None) -> StorageKey | None:
    """Normalize a listing prefix; None, "" and "/" mean the whole store."""
    if raw is None:
        return None
    if isinstance(raw, str) and not raw.strip(SEPARATOR):
        return None
    return normalize(raw)


def join(base: str | StorageKey, relative: str | StorageKey) -> StorageKey:
    """Append ``relative`` to ``base`` and re-normalize the result."""
    return normalize(f"{base}{SEPARATOR}{relative}")


def is_prefix_of(prefix: StorageKey | None, key: StorageKey) -> bool:
    """Return True if ``prefix`` is a segment-wise prefix of ``key``.

    ``a/b`` is a prefix of ``a/b`` and ``a/b/c`` but not of ``a/bc``.
    A None prefix matches every key.
    """
    if prefix is None:
        return True
    n = len(prefix.segments)
    return key.segments[:n] == prefix.segments
