"""
Registry of instance caches served by this process.
"""

import asyncio
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from shared.errors import ClosedCacheError, InstanceNotFoundError, ReleaseError
from shared.logging import get_logger
from .caching.expiring_cache import DEFAULT_IDLE_TIMEOUT, CacheStats
from .caching.instance_cache import InstanceCache
from .storage.client import StorageClient, instance_uri

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class InstanceRegistry:
    """One ``InstanceCache`` per storage instance, created on first reference."""

    def __init__(
        self,
        storage: StorageClient,
        cluster_uri: str,
        *,
        visible_instances: Optional[Iterable[str]] = None,
        table_idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        reader_idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        timer: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.storage = storage
        self.cluster_uri = cluster_uri
        self.visible_instances = frozenset(visible_instances) if visible_instances is not None else None
        self.table_idle_timeout = table_idle_timeout
        self.reader_idle_timeout = reader_idle_timeout
        self.metrics = metrics
        self.logger = get_logger("tables.registry")
        self._timer = timer
        self._caches: Dict[str, InstanceCache] = {}
        self._lock = threading.Lock()
        self._stopped = False

    def get_instance_cache(self, instance: str) -> InstanceCache:
        """
        Return the cache for ``instance``, opening the instance if needed.

        Raises InstanceNotFoundError for instances this process does not serve,
        ConstructionError when the instance cannot be opened and
        ClosedCacheError once the registry has stopped.
        """
        if self.visible_instances is not None and instance not in self.visible_instances:
            raise InstanceNotFoundError(instance)

        with self._lock:
            if self._stopped:
                raise ClosedCacheError("instance", instance)
            cache = self._caches.get(instance)
            if cache is None:
                # Opening under the lock keeps a single instance handle per name
                cache = InstanceCache(
                    instance_uri(self.cluster_uri, instance),
                    self.storage,
                    table_idle_timeout=self.table_idle_timeout,
                    reader_idle_timeout=self.reader_idle_timeout,
                    timer=self._timer,
                    metrics=self.metrics,
                )
                self._caches[instance] = cache
        return cache

    def get_instance_handle(self, instance: str) -> Any:
        return self.get_instance_cache(instance).get_instance_handle()

    def get_schema_handle(self, instance: str) -> Any:
        return self.get_instance_cache(instance).get_schema_handle()

    def get_table(self, instance: str, table: str) -> Any:
        return self.get_instance_cache(instance).get_table(table)

    def get_reader(self, instance: str, table: str) -> Any:
        return self.get_instance_cache(instance).get_reader(table)

    def instances(self) -> List[str]:
        """Names of the instances currently cached."""
        with self._lock:
            return sorted(self._caches)

    def invalidate_table(self, instance: str, table: str) -> None:
        """Drop cached handles for a table. Uncached instances are left alone."""
        with self._lock:
            cache = self._caches.get(instance)
        if cache is not None:
            cache.invalidate_table(table)

    def invalidate_instance(self, instance: str) -> List[ReleaseError]:
        """Stop and forget the cache for ``instance``."""
        with self._lock:
            cache = self._caches.pop(instance, None)
        if cache is None:
            return []
        self.logger.info("Invalidating instance", instance=instance)
        return cache.stop()

    def cleanup(self) -> int:
        """Run idle expiry over every cached instance."""
        with self._lock:
            caches = list(self._caches.values())
        return sum(cache.cleanup() for cache in caches)

    def check_health(self) -> Dict[str, List[str]]:
        """Health issues per cached instance."""
        with self._lock:
            caches = dict(self._caches)
        return {name: cache.check_health() for name, cache in sorted(caches.items())}

    def stats(self, instance: str) -> Dict[str, CacheStats]:
        with self._lock:
            cache = self._caches.get(instance)
        if cache is None:
            raise InstanceNotFoundError(instance)
        return cache.stats()

    def stop(self) -> List[ReleaseError]:
        """Stop every instance cache; later lookups fail with ClosedCacheError."""
        with self._lock:
            self._stopped = True
            caches = list(self._caches.values())
            self._caches.clear()

        errors: List[ReleaseError] = []
        for cache in caches:
            errors.extend(cache.stop())
        self.logger.info("Instance registry stopped", instances=len(caches), release_failures=len(errors))
        return errors


class ExpirySweeper:
    """Background task releasing idle handles across the registry."""

    def __init__(self, registry: InstanceRegistry, interval_seconds: float = 60.0):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.logger = get_logger("tables.expiry_sweeper")
        self._task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the sweep loop."""
        self.running = True
        self._task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Expiry sweeper started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop the sweep loop."""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.logger.info("Expiry sweeper stopped")

    async def sweep(self) -> int:
        """Run one expiry pass off the event loop."""
        evicted = await asyncio.to_thread(self.registry.cleanup)
        if evicted:
            self.logger.info("Released idle resources", count=evicted)
        return evicted

    async def _sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.sweep()
            except Exception as e:
                self.logger.error("Error in expiry sweep", error=str(e))
