"""
Unit tests for the tables service.
"""

import pytest
from fastapi.testclient import TestClient

from service_tables.app.main import TablesService, create_app
from service_tables.app.storage.memory import InMemoryStorageClient
from shared.config import ServiceConfig
from shared.test_helpers import TestDataFactory


class TestTablesService:
    """Test cases for TablesService."""

    @pytest.fixture
    def storage(self):
        return InMemoryStorageClient(TestDataFactory.create_test_instances())

    @pytest.fixture
    def config(self):
        return ServiceConfig("tables", 8020, env="test", cluster_uri="memory://cluster")

    @pytest.fixture
    def service(self, config, storage):
        return TablesService(config=config, storage=storage)

    @pytest.fixture
    def client(self, service):
        return TestClient(service.app)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "tables"
        assert data["cluster_uri"] == "memory://cluster"

    def test_health_endpoint(self, client):
        """Test health endpoint with no instances cached."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "tables"
        assert data["status"] == "ok"
        assert data["dependencies"] == {}

    def test_health_reports_degraded_instance(self, client, service, storage):
        """A cached instance with issues marks the service degraded."""
        service.registry.get_table("prod", "users")
        service.registry.get_table("staging", "users")
        storage.drop_table("staging", "users")

        response = client.get("/health")

        data = response.json()
        assert data["status"] == "degraded"
        assert data["dependencies"] == {"prod": "ok", "staging": "degraded"}

    def test_list_instances(self, client, service):
        """Only instances with an open cache are listed."""
        assert client.get("/api/v1/instances").json() == {"instances": []}

        service.registry.get_table("prod", "users")

        assert client.get("/api/v1/instances").json() == {"instances": ["prod"]}

    def test_instance_health(self, client):
        """Diagnostics for a healthy instance."""
        response = client.get("/api/v1/instances/prod/health")

        assert response.status_code == 200
        assert response.json() == {"instance": "prod", "healthy": True, "issues": []}

    def test_instance_health_with_issues(self, client, service, storage):
        """Diagnostics list the failing resources."""
        service.registry.get_reader("prod", "orders")
        storage.drop_table("prod", "orders")

        data = client.get("/api/v1/instances/prod/health").json()

        assert data["healthy"] is False
        assert data["issues"] == [
            "Table orders in instance prod cannot report its capabilities.",
            "Reader for table orders in instance prod cannot get data.",
        ]

    def test_unavailable_instance(self, client):
        """An instance that cannot be opened is a service-unavailable error."""
        response = client.get("/api/v1/instances/missing/health", headers={"X-Request-ID": "req-1"})

        assert response.status_code == 503
        data = response.json()
        assert data["code"] == "RESOURCE_UNAVAILABLE"
        assert data["details"]["resource"] == "instance"
        assert data["request_id"] == "req-1"
        assert response.headers["X-Request-ID"] == "req-1"

    def test_hidden_instance(self, storage):
        """Instances outside the visible set are not found."""
        config = ServiceConfig("tables", 8020, env="test", visible_instances=["prod"])
        client = TestClient(create_app(config=config, storage=storage))

        response = client.get("/api/v1/instances/staging/health")

        assert response.status_code == 404
        assert response.json()["code"] == "INSTANCE_NOT_FOUND"

    def test_closed_registry(self, client, service):
        """Lookups after shutdown are reported distinctly from outages."""
        service.registry.stop()

        response = client.get("/api/v1/instances/prod/health")

        assert response.status_code == 410
        assert response.json()["code"] == "INSTANCE_CLOSED"

    def test_cache_stats(self, client, service):
        """Cache counters are exposed per sub-cache."""
        service.registry.get_table("prod", "users")
        service.registry.get_table("prod", "users")

        response = client.get("/api/v1/instances/prod/cache")

        assert response.status_code == 200
        tables = response.json()["caches"]["tables"]
        assert tables["size"] == 1
        assert tables["hits"] == 1
        assert tables["misses"] == 1
        assert tables["idle_timeout_seconds"] == 600.0

    def test_cache_stats_uncached_instance(self, client):
        response = client.get("/api/v1/instances/prod/cache")
        assert response.status_code == 404

    def test_invalidate_table(self, client, service):
        """Deleting a table releases its cached handles."""
        reader = service.registry.get_reader("prod", "users")
        table = service.registry.get_table("prod", "users")

        response = client.delete("/api/v1/instances/prod/tables/users")

        assert response.status_code == 200
        assert response.json()["invalidated"] is True
        assert reader.released is True
        assert table.released is True

    def test_invalidate_instance(self, client, service):
        """Deleting an instance stops its cache."""
        instance = service.registry.get_instance_handle("prod")

        response = client.delete("/api/v1/instances/prod")

        assert response.status_code == 200
        assert response.json()["release_failures"] == []
        assert instance.released is True
        assert service.registry.instances() == []

    def test_metrics_endpoint(self, client, service):
        """Resource cache metrics are exported."""
        service.registry.get_table("prod", "users")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "resource_cache_loads_total" in response.text

    def test_lifecycle_starts_and_stops_sweeper(self, service):
        """Startup runs the sweeper; shutdown releases everything."""
        with TestClient(service.app) as client:
            assert service.sweeper.running is True
            client.get("/api/v1/instances/prod/health")
            instance = service.registry.get_instance_handle("prod")

        assert service.sweeper.running is False
        assert instance.released is True
        assert service.registry.instances() == []
