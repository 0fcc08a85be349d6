"""
Storage collaborator seam.

The caches consume the table-storage library only through ``StorageClient``.
``InMemoryStorageClient`` implements it for local runs and tests.
"""

from .client import IllegalStateError, StorageClient, instance_name_from_uri, instance_uri
from .memory import InMemoryStorageClient


def create_storage_client(config) -> StorageClient:
    """Build the storage client named by ``config.storage_backend``."""
    if config.storage_backend == "memory":
        return InMemoryStorageClient(config.memory_instances)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


__all__ = [
    "IllegalStateError",
    "InMemoryStorageClient",
    "StorageClient",
    "create_storage_client",
    "instance_name_from_uri",
    "instance_uri",
]
