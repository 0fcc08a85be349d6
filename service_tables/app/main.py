"""
Table access service for the Table Access Layer.
"""

import asyncio
from dataclasses import asdict
from typing import Any, Dict, Optional

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.logging import set_instance_context
from .registry import ExpirySweeper, InstanceRegistry
from .storage import StorageClient, create_storage_client


class TablesService(BaseService):
    """Serves cached storage handles and their diagnostics."""

    def __init__(self, config: Optional[ServiceConfig] = None, storage: Optional[StorageClient] = None):
        super().__init__("tables", 8020, config=config)
        self.storage = storage or create_storage_client(self.config)
        self.registry = InstanceRegistry(
            self.storage,
            self.config.cluster_uri,
            visible_instances=self.config.visible_instances,
            table_idle_timeout=self.config.table_idle_expiry_seconds,
            reader_idle_timeout=self.config.reader_idle_expiry_seconds,
            metrics=self.metrics,
        )
        self.sweeper = ExpirySweeper(self.registry, self.config.expiry_sweep_interval_seconds)

        @self.app.on_event("startup")
        async def _startup():
            await self.sweeper.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.sweeper.stop()
            await asyncio.to_thread(self.registry.stop)

        self._setup_instance_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.tables_service = self

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report each cached instance as ok or degraded."""
        health = await asyncio.to_thread(self.registry.check_health)
        return {instance: "ok" if not issues else "degraded" for instance, issues in health.items()}

    def _setup_instance_routes(self):
        """Set up cache diagnostics and administration routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": self.service_name,
                "message": "Table Access Layer - Resource Cache",
                "cluster_uri": self.config.cluster_uri,
            }

        @self.app.get("/api/v1/instances")
        def list_instances():
            """Instances with an open cache in this process."""
            return {"instances": self.registry.instances()}

        @self.app.get("/api/v1/instances/{instance}/health")
        def instance_health(instance: str):
            """Diagnostics for one instance; opens the instance if needed."""
            set_instance_context(instance)
            cache = self.registry.get_instance_cache(instance)
            issues = cache.check_health()
            return {"instance": instance, "healthy": not issues, "issues": issues}

        @self.app.get("/api/v1/instances/{instance}/cache")
        def instance_cache_stats(instance: str):
            """Table and reader cache counters for a cached instance."""
            set_instance_context(instance)
            stats = self.registry.stats(instance)
            return {"instance": instance, "caches": {name: asdict(value) for name, value in stats.items()}}

        @self.app.delete("/api/v1/instances/{instance}/tables/{table}")
        def invalidate_table(instance: str, table: str):
            """Release the cached table and reader handles for a table."""
            set_instance_context(instance)
            self.registry.invalidate_table(instance, table)
            self.logger.info("Table invalidated", instance=instance, table=table)
            return {"instance": instance, "table": table, "invalidated": True}

        @self.app.delete("/api/v1/instances/{instance}")
        def invalidate_instance(instance: str):
            """Stop an instance cache and release everything it holds."""
            set_instance_context(instance)
            errors = self.registry.invalidate_instance(instance)
            return {
                "instance": instance,
                "invalidated": True,
                "release_failures": [error.to_response().model_dump() for error in errors],
            }


def create_app(config: Optional[ServiceConfig] = None, storage: Optional[StorageClient] = None) -> Any:
    """Create FastAPI application."""
    service = TablesService(config=config, storage=storage)
    return service.app


if __name__ == "__main__":
    TablesService().run()
