"""
Contract between the resource caches and the table-storage client library.

The caches never talk to the cluster directly. Everything they need is one of
the primitives below; open and release failures surface as ``OSError`` and the
health probes may additionally raise ``IllegalStateError``.
"""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import urlparse


class IllegalStateError(RuntimeError):
    """A resource exists but can no longer be used (e.g. its connection was torn down)."""


class StorageClient(Protocol):
    """Primitive operations consumed from the storage library."""

    def open_instance(self, uri: str) -> Any:
        """Connect to the instance at ``uri`` and load its metadata."""

    def open_table(self, instance: Any, name: str) -> Any:
        """Open table ``name`` within an open instance."""

    def open_reader(self, table: Any) -> Any:
        """Open a reader over an open table."""

    def schema_table(self, instance: Any) -> Any:
        """Schema table owned by an open instance; released with the instance."""

    def release(self, handle: Any) -> None:
        """Release an instance, table or reader handle."""

    def probe_instance(self, instance: Any) -> None:
        """Lightweight metadata call against the instance."""

    def probe_table(self, table: Any) -> None:
        """Lightweight capability call against the table (no data read)."""

    def probe_reader(self, reader: Any) -> None:
        """Synthetic liveness read: zero-length row key with an empty request."""


def instance_uri(cluster_uri: str, instance: str) -> str:
    """Build the URI of ``instance`` within the cluster at ``cluster_uri``."""
    return f"{cluster_uri.rstrip('/')}/{instance}"


def instance_name_from_uri(uri: str) -> str:
    """Return the instance component (last path segment) of an instance URI."""
    path = urlparse(uri).path.strip("/")
    if not path:
        raise ValueError(f"URI {uri} does not name a storage instance")
    return path.rsplit("/", 1)[-1]
