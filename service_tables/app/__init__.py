"""
Table access service package for the Table Access Layer.

The service keeps storage handles open between requests so each request does
not pay for connecting to the cluster and loading table metadata:

- Instance caches: one per storage instance, owning its tables and readers
- Idle expiry: handles unused for the configured window are released
- Diagnostics: health probes over every resident handle

Structure:
- app.main: FastAPI app, routes, and startup/shutdown wiring.
- app.registry: Instance registry and background expiry sweeper.
- app.caching: Expiring keyed cache and per-instance cache.
- app.storage: Storage client contract and in-memory backend.
"""
