"""
Keyed cache of open storage handles with idle expiry and release-on-removal.

Entries are created lazily by a loader, refreshed on every hit, and removed
either when idle for longer than ``idle_timeout`` seconds or on explicit
invalidation. Every removal path hands the handle to the release hook exactly
once, after the optional ``on_removal(key, cause)`` listener. Release failures
are logged and counted but never reach the caller.

Concurrent ``get`` calls for the same key share a single in-flight load;
distinct keys load independently. Releases and loads run outside the cache
lock, so a slow storage call never blocks hits on other keys.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar, TYPE_CHECKING

from shared.errors import ClosedCacheError, ConstructionError, ReleaseError, ResourceCacheError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


V = TypeVar("V")

DEFAULT_IDLE_TIMEOUT = 600.0


class RemovalCause(Enum):
    """Why an entry left the cache."""
    EXPIRED = "expired"
    EXPLICIT = "explicit"
    CLOSED = "closed"  # load finished after loading was disabled


@dataclass
class CacheEntry(Generic[V]):
    key: str
    handle: V
    last_access: float


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time counters for one cache."""

    name: str
    size: int
    hits: int
    misses: int
    load_successes: int
    load_failures: int
    evictions: int
    idle_timeout_seconds: float
    loading_disabled: bool


class ExpiringKeyedCache(Generic[V]):
    """Lazily populated, idle-expiring map from name to open handle."""

    def __init__(
        self,
        name: str,
        loader: Callable[[str], V],
        release: Callable[[V], None],
        *,
        resource: Optional[str] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        timer: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
        labels: Optional[Dict[str, str]] = None,
        on_removal: Optional[Callable[[str, RemovalCause], None]] = None,
    ):
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")

        self.name = name
        self.resource = resource or name
        self.idle_timeout = idle_timeout
        self.metrics = metrics
        self._loader = loader
        self._release = release
        self._on_removal = on_removal
        self._timer = timer
        self._labels = {"instance": "", "cache": name, **(labels or {})}
        self.logger = get_logger("tables.cache").bind(**self._labels)

        # Least recently accessed first
        self._entries: "OrderedDict[str, CacheEntry[V]]" = OrderedDict()
        self._loading: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._loading_disabled = threading.Event()

        self._hits = 0
        self._misses = 0
        self._load_successes = 0
        self._load_failures = 0
        self._evictions = 0

    def get(self, key: str) -> V:
        """
        Return the handle for ``key``, opening it on a miss.

        Raises ConstructionError when the loader fails (nothing is cached, the
        next call retries) and ClosedCacheError once loading is disabled.
        """
        hit = False
        handle: Optional[V] = None
        future: Optional[Future] = None
        owner = False
        expired: List[CacheEntry[V]] = []

        with self._lock:
            now = self._timer()
            entry = self._entries.get(key)
            if entry is not None and self._is_expired(entry, now):
                expired.append(self._pop_locked(key))
                entry = None

            if entry is not None:
                entry.last_access = now
                self._entries.move_to_end(key)
                self._hits += 1
                handle = entry.handle
                hit = True
            else:
                self._misses += 1
                future = self._loading.get(key)
                if future is None and not self._loading_disabled.is_set():
                    future = Future()
                    self._loading[key] = future
                    owner = True

        if expired:
            self._release_entries(expired, RemovalCause.EXPIRED)

        if hit:
            self._increment("resource_cache_hits_total")
            return handle  # type: ignore[return-value]

        self._increment("resource_cache_misses_total")
        if future is None:
            raise ClosedCacheError(self.resource, key)
        if owner:
            return self._load(key, future)
        return future.result()

    def invalidate(self, key: str) -> None:
        """Remove ``key`` and release its handle. No-op when absent."""
        with self._lock:
            if key not in self._entries:
                return
            entry = self._pop_locked(key)
        self._release_entries([entry], RemovalCause.EXPLICIT)

    def invalidate_all(self) -> List[ReleaseError]:
        """Remove and release every entry, returning the release failures."""
        with self._lock:
            entries = [self._pop_locked(key) for key in list(self._entries)]
        return self._release_entries(entries, RemovalCause.EXPLICIT)

    def cleanup(self) -> int:
        """Evict and release every entry idle past the timeout."""
        expired: List[CacheEntry[V]] = []
        with self._lock:
            now = self._timer()
            while self._entries:
                key, entry = next(iter(self._entries.items()))
                if not self._is_expired(entry, now):
                    break
                expired.append(self._pop_locked(key))

        if expired:
            self._release_entries(expired, RemovalCause.EXPIRED)
            self.logger.debug("Expired idle resources", count=len(expired))
        return len(expired)

    def snapshot(self) -> List[Tuple[str, V]]:
        """Resident (key, handle) pairs. Expires idle entries first; never loads."""
        self.cleanup()
        with self._lock:
            return [(key, entry.handle) for key, entry in self._entries.items()]

    def disable_loading(self) -> None:
        """Make every later miss fail with ClosedCacheError."""
        self._loading_disabled.set()

    @property
    def loading_disabled(self) -> bool:
        return self._loading_disabled.is_set()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                name=self.name,
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                load_successes=self._load_successes,
                load_failures=self._load_failures,
                evictions=self._evictions,
                idle_timeout_seconds=self.idle_timeout,
                loading_disabled=self._loading_disabled.is_set(),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and not self._is_expired(entry, self._timer())

    def _load(self, key: str, future: Future) -> V:
        start = time.perf_counter()
        try:
            handle = self._loader(key)
        except ResourceCacheError as exc:
            self._fail_load(key, future, exc)
            raise
        except Exception as exc:
            error = ConstructionError(self.resource, key, exc)
            error.__cause__ = exc
            self._fail_load(key, future, error)
            raise error from exc
        except BaseException as exc:
            # Interrupts propagate unwrapped, but the key must not stay in flight
            self._fail_load(key, future, exc)
            raise

        with self._lock:
            del self._loading[key]
            closed = self._loading_disabled.is_set()
            if not closed:
                self._entries[key] = CacheEntry(key, handle, self._timer())
                self._load_successes += 1
                size = len(self._entries)

        if closed:
            # Loading was disabled mid-flight; nobody will ever invalidate this handle.
            self._release_entries([CacheEntry(key, handle, self._timer())], RemovalCause.CLOSED)
            error = ClosedCacheError(self.resource, key)
            future.set_exception(error)
            raise error

        self._increment("resource_cache_loads_total", result="success")
        self._observe("resource_cache_load_duration_seconds", time.perf_counter() - start)
        self._set_size(size)
        self.logger.debug("Opened resource", key=key)
        future.set_result(handle)
        return handle

    def _fail_load(self, key: str, future: Future, error: BaseException) -> None:
        with self._lock:
            del self._loading[key]
            self._load_failures += 1
        self._increment("resource_cache_loads_total", result="failure")
        self.logger.warning(
            "Failed to open resource",
            key=key,
            code=getattr(error, "code", type(error).__name__),
            error=str(error),
        )
        future.set_exception(error)

    def _pop_locked(self, key: str) -> CacheEntry[V]:
        self._evictions += 1
        return self._entries.pop(key)

    def _is_expired(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.last_access >= self.idle_timeout

    def _release_entries(self, entries: List[CacheEntry[V]], cause: RemovalCause) -> List[ReleaseError]:
        """Release each handle once. Failures are logged and returned, never raised."""
        errors: List[ReleaseError] = []
        for entry in entries:
            self._increment("resource_cache_evictions_total", cause=cause.value)
            if self._on_removal is not None:
                # Runs before the release so dependents go first
                try:
                    self._on_removal(entry.key, cause)
                except Exception as exc:
                    self.logger.warning("Removal listener failed", key=entry.key, cause=cause.value, error=str(exc))
            try:
                self._release(entry.handle)
            except Exception as exc:
                error = ReleaseError(self.resource, entry.key, exc)
                errors.append(error)
                self._increment("resource_cache_release_failures_total")
                self.logger.warning(
                    "Unable to release resource",
                    key=entry.key,
                    cause=cause.value,
                    code=error.code,
                    error=str(exc),
                )
            else:
                self.logger.debug("Released resource", key=entry.key, cause=cause.value)

        with self._lock:
            size = len(self._entries)
        self._set_size(size)
        return errors

    def _increment(self, metric_name: str, **labels) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter(metric_name, **self._labels, **labels)
        except Exception as exc:  # pragma: no cover - metrics failures should never break lookups
            self.logger.debug("Failed to record cache metric", metric=metric_name, error=str(exc))

    def _observe(self, metric_name: str, value: float) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.observe_histogram(metric_name, value, **self._labels)
        except Exception as exc:  # pragma: no cover
            self.logger.debug("Failed to record cache metric", metric=metric_name, error=str(exc))

    def _set_size(self, size: int) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.set_gauge("resource_cache_entries", size, **self._labels)
        except Exception as exc:  # pragma: no cover
            self.logger.debug("Failed to record cache metric", metric="resource_cache_entries", error=str(exc))
