"""Backend factory and storage manager.

``create_adapter`` builds one of the built-in adapters from configuration.
``StorageManager`` adds a registry of named backend factories and of
pre-obtained credentials, so an application can open clients by name:

    manager = StorageManager(config)
    token_id = manager.add_credential(AccessTokenCredential(token))
    client = manager.open_client("remote", credential_id=token_id)
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from typing import Any

import httpx

from storageio.adapters.base import BackendAdapter
from storageio.adapters.local import LocalDiskAdapter
from storageio.adapters.memory import InMemoryAdapter
from storageio.adapters.remote import RemoteObjectStoreAdapter
from storageio.client import StorageClient
from storageio.config import BackendKind, StorageConfig, load_storage_config
from storageio.credentials import Credential
from storageio.errors import StorageConfigError

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[StorageConfig, Credential | None], BackendAdapter]


def _build_memory(config: StorageConfig, credential: Credential | None) -> BackendAdapter:
    return InMemoryAdapter(hash_algorithm=config.hash_algorithm)


def _build_local(config: StorageConfig, credential: Credential | None) -> BackendAdapter:
    return LocalDiskAdapter(config.root_path, hash_algorithm=config.hash_algorithm)


def _build_remote(
    config: StorageConfig,
    credential: Credential | None,
    http_client: httpx.Client | None = None,
) -> BackendAdapter:
    if not config.remote_base_url or not config.remote_bucket:
        raise StorageConfigError("remote backend requires remote_base_url and remote_bucket")
    return RemoteObjectStoreAdapter(
        config.remote_base_url,
        config.remote_bucket,
        credential=credential,
        http_client=http_client,
        hash_algorithm=config.hash_algorithm,
        request_timeout_seconds=config.request_timeout_seconds,
        native_conditional=config.native_conditional,
    )


_BUILTIN_FACTORIES: dict[str, AdapterFactory] = {
    BackendKind.MEMORY.value: _build_memory,
    BackendKind.LOCAL.value: _build_local,
    BackendKind.REMOTE.value: _build_remote,
}


def create_adapter(
    config: StorageConfig,
    *,
    credential: Credential | None = None,
    http_client: httpx.Client | None = None,
) -> BackendAdapter:
    """Create the adapter selected by ``config.backend``.

    Args:
        config: Storage configuration.
        credential: Credential for the remote backend (ignored by others).
        http_client: Optional httpx.Client for the remote backend (testing).

    Returns:
        A new adapter; the caller owns it and must close it.
    """
    if config.backend == BackendKind.REMOTE:
        return _build_remote(config, credential, http_client)
    return _BUILTIN_FACTORIES[config.backend.value](config, credential)


class StorageManager:
    """Registry of backend factories and credentials.

    The built-in "memory", "local" and "remote" backends are registered on
    construction. Adapters created through ``open_client`` are owned by the
    manager and closed by ``close()``.
    """

    def __init__(self, config: StorageConfig | None = None) -> None:
        self._config = config or StorageConfig()
        self._factories: dict[str, AdapterFactory] = dict(_BUILTIN_FACTORIES)
        self._credentials: dict[str, Credential] = {}
        self._adapters: list[BackendAdapter] = []
        self._lock = threading.Lock()

    @property
    def config(self) -> StorageConfig:
        return self._config

    @property
    def backends(self) -> list[str]:
        """Return the registered backend names, sorted."""
        with self._lock:
            return sorted(self._factories)

    def register_backend(self, name: str, factory: AdapterFactory) -> None:
        """Register a factory under ``name``.

        Raises:
            StorageConfigError: If ``name`` is empty or already registered.
        """
        normalized = name.strip().lower()
        if not normalized:
            raise StorageConfigError("backend name must be non-empty")
        with self._lock:
            if normalized in self._factories:
                raise StorageConfigError(f"Backend already registered: {normalized}")
            self._factories[normalized] = factory
        logger.info("Registered storage backend: %s", normalized)

    def add_credential(self, credential: Credential) -> str:
        """Store a credential and return the id to open clients with."""
        if not isinstance(credential, Credential):
            raise TypeError("credential must provide auth_headers()")
        credential_id = str(uuid.uuid4())
        with self._lock:
            self._credentials[credential_id] = credential
        return credential_id

    def remove_credential(self, credential_id: str) -> None:
        """Forget a credential. Clients already opened keep working."""
        with self._lock:
            if self._credentials.pop(credential_id, None) is None:
                raise StorageConfigError(f"Unknown credential id: {credential_id}")

    def open_client(
        self,
        backend: str,
        *,
        credential_id: str | None = None,
        config: StorageConfig | None = None,
        **client_kwargs: Any,
    ) -> StorageClient:
        """Create an adapter for ``backend`` and wrap it in a client.

        Args:
            backend: Registered backend name.
            credential_id: Id returned by ``add_credential``.
            config: Configuration overriding the manager's.
            **client_kwargs: Passed to StorageClient (sleep, clock, rng, retry_policy).

        Raises:
            StorageConfigError: If the backend or credential is unknown.
        """
        name = backend.strip().lower()
        effective = config or self._config
        with self._lock:
            factory = self._factories.get(name)
            if factory is None:
                raise StorageConfigError(
                    f"Unknown storage backend: {name}. "
                    f"Available: {', '.join(sorted(self._factories))}"
                )
            credential: Credential | None = None
            if credential_id is not None:
                credential = self._credentials.get(credential_id)
                if credential is None:
                    raise StorageConfigError(f"Unknown credential id: {credential_id}")

        adapter = factory(effective, credential)
        with self._lock:
            self._adapters.append(adapter)
        logger.debug("Opened storage client: backend=%s", name)
        return StorageClient(adapter, config=effective, **client_kwargs)

    def close(self) -> None:
        """Close every adapter this manager created."""
        with self._lock:
            adapters, self._adapters = self._adapters, []
        for adapter in adapters:
            adapter.close()

    def __enter__(self) -> StorageManager:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def create_client_from_env(
    *,
    credential: Credential | None = None,
    http_client: httpx.Client | None = None,
) -> StorageClient:
    """Build a client from ``STORAGEIO_*`` environment variables.

    Raises:
        StorageConfigError: If the environment holds an invalid configuration.
    """
    config = load_storage_config()
    adapter = create_adapter(config, credential=credential, http_client=http_client)
    logger.info("Storage client created from environment: backend=%s", config.backend)
    return StorageClient(adapter, config=config)
