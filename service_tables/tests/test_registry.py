"""
Unit tests for the instance registry and expiry sweeper.
"""

import asyncio
from unittest.mock import patch

import pytest

from service_tables.app.registry import ExpirySweeper, InstanceRegistry
from service_tables.app.storage.memory import InMemoryStorageClient
from shared.errors import ClosedCacheError, ConstructionError, InstanceNotFoundError
from shared.test_helpers import FakeClock, TestDataFactory


class TestInstanceRegistry:
    """Test cases for InstanceRegistry."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def storage(self):
        return InMemoryStorageClient(TestDataFactory.create_test_instances())

    @pytest.fixture
    def registry(self, storage, clock):
        return InstanceRegistry(storage, "memory://cluster", timer=clock)

    def test_one_cache_per_instance(self, registry):
        """Repeated lookups share one instance cache."""
        first = registry.get_instance_cache("prod")

        assert registry.get_instance_cache("prod") is first
        assert first.uri == "memory://cluster/prod"
        assert registry.instances() == ["prod"]

    def test_delegates_table_and_reader_lookups(self, registry):
        """Tables and readers resolve through the instance cache."""
        table = registry.get_table("staging", "users")
        reader = registry.get_reader("staging", "users")

        assert reader.table is table
        assert registry.get_instance_handle("staging") is table.instance
        assert registry.get_schema_handle("staging").instance is table.instance

    def test_hidden_instance_is_not_found(self, storage, clock):
        """Instances outside the visible set are rejected without opening them."""
        registry = InstanceRegistry(storage, "memory://cluster", visible_instances=["prod"], timer=clock)

        with pytest.raises(InstanceNotFoundError) as exc_info:
            registry.get_instance_cache("staging")

        assert exc_info.value.status_code == 404
        assert storage.opened == []

    def test_unopenable_instance_is_not_retained(self, registry):
        """A construction failure leaves no cache behind."""
        with pytest.raises(ConstructionError):
            registry.get_instance_cache("missing")

        assert registry.instances() == []

    def test_invalidate_table_on_uncached_instance(self, registry, storage):
        """Invalidating a table of an instance never opened is a no-op."""
        registry.invalidate_table("prod", "users")

        assert registry.instances() == []
        assert storage.opened == []

    def test_invalidate_table(self, registry):
        """Table invalidation is forwarded to the instance cache."""
        table = registry.get_table("prod", "users")

        registry.invalidate_table("prod", "users")

        assert table.released is True
        assert registry.get_table("prod", "users") is not table

    def test_invalidate_instance(self, registry):
        """An invalidated instance is stopped and reopened on next use."""
        cache = registry.get_instance_cache("prod")
        registry.get_reader("prod", "users")

        assert registry.invalidate_instance("prod") == []

        assert cache.is_open is False
        assert registry.instances() == []
        assert registry.get_instance_cache("prod") is not cache

    def test_invalidate_unknown_instance(self, registry):
        assert registry.invalidate_instance("prod") == []

    def test_cleanup_expires_across_instances(self, registry, clock):
        """Idle handles in every instance are released by one sweep."""
        prod_table = registry.get_table("prod", "users")
        staging_table = registry.get_table("staging", "users")

        clock.advance(600)

        assert registry.cleanup() == 2
        assert prod_table.released is True
        assert staging_table.released is True

    def test_check_health(self, registry, storage):
        """Health is reported per cached instance."""
        registry.get_table("prod", "users")
        registry.get_table("staging", "users")
        storage.drop_table("staging", "users")

        health = registry.check_health()

        assert health == {
            "prod": [],
            "staging": ["Table users in instance staging cannot report its capabilities."],
        }

    def test_stats_for_uncached_instance(self, registry):
        with pytest.raises(InstanceNotFoundError):
            registry.stats("prod")

    def test_stop(self, registry, storage):
        """Stopping releases every handle and rejects later lookups."""
        registry.get_reader("prod", "users")
        registry.get_reader("staging", "experiments")

        assert registry.stop() == []

        assert all(handle.released for handle in storage.opened)
        assert registry.instances() == []
        with pytest.raises(ClosedCacheError):
            registry.get_instance_cache("prod")


class TestExpirySweeper:
    """Test cases for ExpirySweeper."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def registry(self, clock):
        storage = InMemoryStorageClient(TestDataFactory.create_test_instances())
        return InstanceRegistry(storage, "memory://cluster", timer=clock)

    @pytest.mark.asyncio
    async def test_sweep_releases_idle_handles(self, registry, clock):
        """One sweep evicts idle handles off the event loop."""
        table = registry.get_table("prod", "users")
        sweeper = ExpirySweeper(registry, interval_seconds=60)

        assert await sweeper.sweep() == 0
        clock.advance(600)
        assert await sweeper.sweep() == 1
        assert table.released is True

    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(self, registry, clock):
        """The background loop keeps sweeping and stops cleanly."""
        table = registry.get_table("prod", "users")
        clock.advance(600)
        sweeper = ExpirySweeper(registry, interval_seconds=0.01)

        await sweeper.start()
        for _ in range(100):
            if table.released:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert table.released is True
        assert sweeper.running is False

    @pytest.mark.asyncio
    async def test_loop_survives_sweep_errors(self, registry):
        """A failing sweep is logged and the loop carries on."""
        sweeper = ExpirySweeper(registry, interval_seconds=0.01)
        calls = []

        def flaky_cleanup():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        with patch.object(registry, "cleanup", side_effect=flaky_cleanup) as cleanup:
            await sweeper.start()
            for _ in range(100):
                if cleanup.call_count >= 2:
                    break
                await asyncio.sleep(0.01)
            await sweeper.stop()

        assert cleanup.call_count >= 2
