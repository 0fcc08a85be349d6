"""
Resource tree for one storage instance: instance handle, tables and readers.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from shared.errors import ClosedCacheError, ConstructionError, ReleaseError
from shared.logging import get_logger
from ..storage.client import IllegalStateError, StorageClient, instance_name_from_uri
from .expiring_cache import DEFAULT_IDLE_TIMEOUT, CacheStats, ExpiringKeyedCache, RemovalCause

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class InstanceCache:
    """
    Caches the instance, table and reader handles for one storage instance.

    The instance handle is opened eagerly and lives until ``stop()``. Tables
    and readers are opened on first use and released when idle, invalidated,
    or when the cache stops. Readers are opened from tables, so a table leaving
    the cache for any reason also drops its reader. Handles returned by this
    class are borrowed: callers must not release them.
    """

    def __init__(
        self,
        uri: str,
        storage: StorageClient,
        *,
        table_idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        reader_idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        timer: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.uri = uri
        self.instance_name = instance_name_from_uri(uri)
        self.storage = storage
        self.logger = get_logger("tables.instance_cache").bind(instance=self.instance_name)

        self._closed = threading.Event()
        self._stop_lock = threading.Lock()
        self._instance_released = False

        try:
            self._instance = storage.open_instance(uri)
        except Exception as exc:
            self.logger.error("Failed to open storage instance", uri=uri, error=str(exc))
            raise ConstructionError("instance", self.instance_name, exc) from exc

        labels = {"instance": self.instance_name}
        self._tables: ExpiringKeyedCache[Any] = ExpiringKeyedCache(
            "tables",
            self._open_table,
            storage.release,
            resource="table",
            idle_timeout=table_idle_timeout,
            timer=timer,
            metrics=metrics,
            labels=labels,
            on_removal=self._drop_reader,
        )
        self._readers: ExpiringKeyedCache[Any] = ExpiringKeyedCache(
            "readers",
            self._open_reader,
            storage.release,
            resource="reader",
            idle_timeout=reader_idle_timeout,
            timer=timer,
            metrics=metrics,
            labels=labels,
        )
        self.logger.info("Opened storage instance", uri=uri)

    @property
    def is_open(self) -> bool:
        return not self._closed.is_set()

    def get_instance_handle(self) -> Any:
        """Return the instance handle. It must *not* be released by the caller."""
        return self._instance

    def get_schema_handle(self) -> Any:
        """
        Return the instance's schema table. It is owned by the instance handle
        and must *not* be released by the caller.
        """
        if not self.is_open:
            raise ClosedCacheError("schema table", self.instance_name)
        try:
            return self.storage.schema_table(self._instance)
        except Exception as exc:
            raise ConstructionError("schema table", self.instance_name, exc) from exc

    def get_table(self, name: str) -> Any:
        """
        Return the table handle for ``name``. It must *not* be released.

        Raises ConstructionError if the table cannot be opened and
        ClosedCacheError after ``stop()``.
        """
        return self._tables.get(name)

    def get_reader(self, name: str) -> Any:
        """
        Return the reader handle for table ``name``. It must *not* be closed.

        Raises ConstructionError if the table or the reader cannot be opened and
        ClosedCacheError after ``stop()``.
        """
        return self._readers.get(name)

    def invalidate_table(self, name: str) -> None:
        """Drop and release the cached reader and table for ``name``."""
        self._readers.invalidate(name)
        self._tables.invalidate(name)

    def cleanup(self) -> int:
        """Release idle readers and tables; returns how many were evicted."""
        return self._readers.cleanup() + self._tables.cleanup()

    def stop(self) -> List[ReleaseError]:
        """
        Stop loading and release everything this cache holds.

        Readers go before tables and the instance handle goes last. Release
        failures are logged and returned rather than raised. Calling ``stop``
        again releases nothing twice.
        """
        self._closed.set()
        self._readers.disable_loading()
        self._tables.disable_loading()

        errors = self._readers.invalidate_all()
        errors.extend(self._tables.invalidate_all())

        with self._stop_lock:
            release_instance = not self._instance_released
            self._instance_released = True

        if release_instance:
            try:
                self.storage.release(self._instance)
            except Exception as exc:
                error = ReleaseError("instance", self.instance_name, exc)
                errors.append(error)
                self.logger.warning("Unable to release storage instance", code=error.code, error=str(exc))
            self.logger.info("Stopped instance cache", release_failures=len(errors))
        return errors

    def check_health(self) -> List[str]:
        """
        Probe the instance and every resident table and reader.

        Returns the issues found, in probe order; an empty list means healthy.
        Nothing is opened and nothing is raised.
        """
        if not self.is_open:
            return [f"Instance cache for storage instance {self.instance_name} is not open."]

        issues: List[str] = []
        label = f"Storage instance {self.instance_name}"
        self._probe(issues, self.storage.probe_instance, self._instance, label, "cannot read instance metadata")

        for name, table in self._tables.snapshot():
            label = f"Table {name} in instance {self.instance_name}"
            self._probe(issues, self.storage.probe_table, table, label, "cannot report its capabilities")

        for name, reader in self._readers.snapshot():
            label = f"Reader for table {name} in instance {self.instance_name}"
            self._probe(issues, self.storage.probe_reader, reader, label, "cannot get data")

        if issues:
            self.logger.warning("Instance cache is unhealthy", issues=len(issues))
        return issues

    def stats(self) -> Dict[str, CacheStats]:
        return {"tables": self._tables.stats(), "readers": self._readers.stats()}

    def _open_table(self, name: str) -> Any:
        if not self.is_open:
            raise ClosedCacheError("table", name)
        return self.storage.open_table(self._instance, name)

    def _open_reader(self, name: str) -> Any:
        if not self.is_open:
            raise ClosedCacheError("reader", name)
        try:
            table = self._tables.get(name)
        except ConstructionError as exc:
            # Surface why the table failed, not that the table lookup failed
            raise ConstructionError("reader", name, exc.cause) from exc.cause
        return self.storage.open_reader(table)

    def _drop_reader(self, name: str, cause: RemovalCause) -> None:
        # A reader never outlives its table, whatever removed the table
        if name in self._readers:
            self.logger.debug("Dropping reader of removed table", table=name, cause=cause.value)
        self._readers.invalidate(name)

    def _probe(self, issues: List[str], probe: Callable[[Any], None], handle: Any, label: str, io_issue: str) -> None:
        try:
            probe(handle)
        except IllegalStateError:
            issues.append(f"{label} is in illegal state.")
        except OSError:
            issues.append(f"{label} {io_issue}.")
        except Exception as exc:
            self.logger.warning("Unexpected health probe failure", resource=label, error=str(exc))
            issues.append(f"{label} failed its health probe: {exc}")

    def __repr__(self) -> str:
        return f"InstanceCache(uri={self.uri!r}, open={self.is_open})"
