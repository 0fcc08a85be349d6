"""
In-memory storage backend for local runs and tests.

Implements the ``StorageClient`` contract over a dictionary of instance names
to table names. Handles track whether they were released so misuse (reading
through a released handle, double release) fails the same way a real client
would.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from shared.logging import get_logger
from .client import IllegalStateError, instance_name_from_uri


@dataclass(eq=False)
class InstanceHandle:
    name: str
    uri: str
    released: bool = False
    schema: Optional["SchemaTableHandle"] = field(default=None, repr=False)


@dataclass(eq=False)
class SchemaTableHandle:
    instance: InstanceHandle


@dataclass(eq=False)
class TableHandle:
    instance: InstanceHandle
    name: str
    released: bool = False


@dataclass(eq=False)
class ReaderHandle:
    table: TableHandle
    released: bool = False


class InMemoryStorageClient:
    """Dictionary-backed storage client."""

    def __init__(self, instances: Optional[Dict[str, Iterable[str]]] = None):
        self.logger = get_logger("tables.storage.memory")
        self._lock = threading.Lock()
        self._instances: Dict[str, Set[str]] = {
            name: set(tables) for name, tables in (instances or {}).items()
        }
        self.opened: List[Any] = []
        self.released: List[Any] = []

    # Cluster administration

    def create_instance(self, name: str, tables: Iterable[str] = ()) -> None:
        with self._lock:
            self._instances.setdefault(name, set()).update(tables)

    def drop_instance(self, name: str) -> None:
        with self._lock:
            self._instances.pop(name, None)

    def create_table(self, instance: str, table: str) -> None:
        with self._lock:
            if instance not in self._instances:
                raise FileNotFoundError(f"Storage instance {instance} does not exist")
            self._instances[instance].add(table)

    def drop_table(self, instance: str, table: str) -> None:
        with self._lock:
            self._instances.get(instance, set()).discard(table)

    def instance_names(self) -> List[str]:
        with self._lock:
            return sorted(self._instances)

    # StorageClient

    def open_instance(self, uri: str) -> InstanceHandle:
        name = instance_name_from_uri(uri)
        with self._lock:
            if name not in self._instances:
                raise FileNotFoundError(f"Storage instance {name} does not exist")
            handle = InstanceHandle(name=name, uri=uri)
            self.opened.append(handle)
        self.logger.debug("Opened instance", instance=name)
        return handle

    def open_table(self, instance: InstanceHandle, name: str) -> TableHandle:
        if instance.released:
            raise ConnectionError(f"Storage instance {instance.name} has been released")
        with self._lock:
            if name not in self._instances.get(instance.name, ()):
                raise FileNotFoundError(f"Table {name} does not exist in instance {instance.name}")
            handle = TableHandle(instance=instance, name=name)
            self.opened.append(handle)
        self.logger.debug("Opened table", instance=instance.name, table=name)
        return handle

    def open_reader(self, table: TableHandle) -> ReaderHandle:
        if table.released:
            raise ConnectionError(f"Table {table.name} has been released")
        handle = ReaderHandle(table=table)
        with self._lock:
            self.opened.append(handle)
        return handle

    def schema_table(self, instance: InstanceHandle) -> SchemaTableHandle:
        if instance.released:
            raise ConnectionError(f"Storage instance {instance.name} has been released")
        with self._lock:
            if instance.schema is None:
                instance.schema = SchemaTableHandle(instance=instance)
            return instance.schema

    def release(self, handle: Any) -> None:
        with self._lock:
            if handle.released:
                raise OSError(f"{handle!r} was already released")
            handle.released = True
            self.released.append(handle)

    def probe_instance(self, instance: InstanceHandle) -> None:
        if instance.released:
            raise IllegalStateError(f"Storage instance {instance.name} has been released")
        with self._lock:
            if instance.name not in self._instances:
                raise FileNotFoundError(f"Metadata for instance {instance.name} is gone")

    def probe_table(self, table: TableHandle) -> None:
        if table.released:
            raise IllegalStateError(f"Table {table.name} has been released")
        with self._lock:
            if table.name not in self._instances.get(table.instance.name, ()):
                raise FileNotFoundError(f"Table {table.name} no longer exists")

    def probe_reader(self, reader: ReaderHandle) -> None:
        if reader.released:
            raise IllegalStateError(f"Reader on table {reader.table.name} has been closed")
        if reader.table.released:
            raise IllegalStateError(f"Table {reader.table.name} under this reader has been released")
        # Zero-length row key, empty request: never returns data.
        with self._lock:
            if reader.table.name not in self._instances.get(reader.table.instance.name, ()):
                raise FileNotFoundError(f"Table {reader.table.name} no longer exists")
