"""storageio: one object storage interface over heterogeneous backends.

Provides normalized keys, a backend-neutral metadata envelope, a shared
error taxonomy and a retrying client facade.

Backends:
- InMemoryAdapter: process-local arena (tests)
- LocalDiskAdapter: local filesystem
- RemoteObjectStoreAdapter: remote object store over HTTP

Environment Variables:
    STORAGEIO_BACKEND: "memory", "local" or "remote" (default: "local")
    STORAGEIO_ROOT_PATH: Root directory for the local backend
        (default: OS temp dir / storageio_objects)
"""

from storageio.adapters import (
    BackendAdapter,
    InMemoryAdapter,
    LocalDiskAdapter,
    ObjectReader,
    ObjectWriter,
    RemoteObjectStoreAdapter,
)
from storageio.client import ClientWriter, StorageClient, VerifyingReader
from storageio.config import BackendKind, StorageConfig, load_storage_config
from storageio.credentials import AccessTokenCredential, AnonymousCredential, Credential
from storageio.errors import (
    ConflictError,
    CorruptObjectError,
    ErrorKind,
    InvalidKeyError,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    ObjectStorageError,
    PermissionDeniedError,
    StorageConfigError,
    StorageUnavailableError,
    TransientStorageError,
)
from storageio.keys import StorageKey, is_prefix_of, join, normalize, normalize_prefix
from storageio.manager import StorageManager, create_adapter, create_client_from_env
from storageio.models import (
    FolderListing,
    HashAlgorithm,
    ListPage,
    ObjectMetadata,
    StoredObject,
    compute_digest,
)
from storageio.retry import Deadline, RetryPolicy, call_with_retry, compute_backoff_seconds

__version__ = "0.1.0"

__all__ = [
    "AccessTokenCredential",
    "AnonymousCredential",
    "BackendAdapter",
    "BackendKind",
    "ClientWriter",
    "ConflictError",
    "CorruptObjectError",
    "Credential",
    "Deadline",
    "ErrorKind",
    "FolderListing",
    "HashAlgorithm",
    "InMemoryAdapter",
    "InvalidKeyError",
    "ListPage",
    "LocalDiskAdapter",
    "ObjectAlreadyExistsError",
    "ObjectMetadata",
    "ObjectNotFoundError",
    "ObjectReader",
    "ObjectStorageError",
    "ObjectWriter",
    "PermissionDeniedError",
    "RemoteObjectStoreAdapter",
    "RetryPolicy",
    "StorageClient",
    "StorageConfig",
    "StorageConfigError",
    "StorageKey",
    "StorageManager",
    "StorageUnavailableError",
    "StoredObject",
    "TransientStorageError",
    "VerifyingReader",
    "__version__",
    "call_with_retry",
    "compute_backoff_seconds",
    "compute_digest",
    "create_adapter",
    "create_client_from_env",
    "is_prefix_of",
    "join",
    "load_storage_config",
    "normalize",
    "normalize_prefix",
]
