"""Opaque credentials handed to the remote backend.

Credential acquisition (OAuth flows, token exchange, refresh) happens
outside this package. The remote adapter only asks a credential for the
HTTP headers that authenticate a request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@runtime_checkable
class Credential(Protocol):
    """Anything that can authenticate a request to the remote store."""

    def auth_headers(self) -> dict[str, str]:
        """Return headers to attach to every request."""
        ...


@dataclass(frozen=True)
class AccessTokenCredential:
    """Pre-obtained bearer token."""

    token: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.token or not self.token.strip():
            raise ValueError("token must be a non-empty string")

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@dataclass(frozen=True)
class AnonymousCredential:
    """No authentication (public buckets, local emulators)."""

    def auth_headers(self) -> dict[str, str]:
        return {}
