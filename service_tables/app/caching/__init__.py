"""
Resource caching package.

Holds the open storage handles a request needs: one ``InstanceCache`` per
storage instance, each built from two ``ExpiringKeyedCache`` instances (tables
and readers). Handles are released on idle expiry, explicit invalidation, or
when the owning instance cache stops.
"""

from .expiring_cache import CacheStats, ExpiringKeyedCache, RemovalCause
from .instance_cache import InstanceCache

__all__ = ["CacheStats", "ExpiringKeyedCache", "InstanceCache", "RemovalCause"]
