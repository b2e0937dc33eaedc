"""Backend adapters.

Backends:
- InMemoryAdapter: process-local arena (deterministic testing)
- LocalDiskAdapter: local filesystem
- RemoteObjectStoreAdapter: remote object store over HTTP
"""

from storageio.adapters.base import BackendAdapter, ObjectReader, ObjectWriter
from storageio.adapters.local import LocalDiskAdapter
from storageio.adapters.memory import InMemoryAdapter
from storageio.adapters.remote import RemoteObjectStoreAdapter

__all__ = [
    "BackendAdapter",
    "InMemoryAdapter",
    "LocalDiskAdapter",
    "ObjectReader",
    "ObjectWriter",
    "RemoteObjectStoreAdapter",
]
