"""Tests for the read API, metrics endpoint and service wiring."""

import json
import time
from typing import Any
from unittest.mock import MagicMock

import prometheus_client.core
import pytest
from starlette.testclient import TestClient

from slurm_cluster_state import server
from slurm_cluster_state.collector import ClusterStateCollector
from slurm_cluster_state.reconciler import Reconciler
from slurm_cluster_state.state import ClusterStore

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> ClusterStore:
    return ClusterStore()


@pytest.fixture
def reconciler(store: ClusterStore) -> Reconciler:
    return Reconciler(store)


@pytest.fixture
def client(store: ClusterStore, reconciler: Reconciler) -> TestClient:
    """Test client for an app without a poller."""
    registry = prometheus_client.core.CollectorRegistry()
    registry.register(ClusterStateCollector(store, reconciler))
    app = server.create_starlette_app(store, registry)
    return TestClient(app)


@pytest.fixture
def committed(reconciler: Reconciler, running_doc: dict[str, Any]) -> int:
    """Commit the running snapshot and return its version."""
    return reconciler.reconcile(running_doc).version


# ---------------------------------------------------------------------------
# Status and version
# ---------------------------------------------------------------------------


def test_status_returns_full_state(client: TestClient, committed: int):
    """/status renders every entity of the committed version."""
    response = client.get("/api/status")

    assert response.status_code == 200
    body = response.json()
    assert body["version"] == committed
    assert [n["name"] for n in body["nodes"]] == ["n1"]
    assert body["nodes"][0]["usage"]["cpus_idle"] == 4
    assert body["partitions"][0]["usage"]["cpus_alloc"] == 4
    assert body["jobs"][0]["allocations"] == [
        {"node": "n1", "resource": "cpu", "used": 4},
    ]
    assert response.headers["x-state-version"] == str(committed)


def test_status_since_current_version_is_not_modified(
    client: TestClient,
    committed: int,
):
    """Polling clients get 304 while nothing was committed."""
    response = client.get("/api/status", params={"since": committed})
    assert response.status_code == 304


def test_status_since_older_version_returns_state(
    client: TestClient,
    committed: int,
):
    """A stale version gets the full state."""
    response = client.get("/api/status", params={"since": committed - 1})
    assert response.status_code == 200
    assert response.json()["version"] == committed


def test_version_before_first_commit(client: TestClient):
    """The clock reads version 0 with no timestamp before any commit."""
    assert client.get("/api/version").json() == {"version": 0, "updated_at": None}


def test_version_after_commit(client: TestClient, store: ClusterStore, committed: int):
    """/version mirrors the staleness clock."""
    body = client.get("/api/version").json()
    assert body["version"] == committed
    assert body["updated_at"] == store.get_version().timestamp.isoformat()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def test_get_node(client: TestClient, committed: int):
    """A node document includes memberships, resources and usage."""
    body = client.get("/api/nodes/n1").json()
    assert body["status"] == "MIXED"
    assert body["partitions"] == ["batch"]
    assert {r["resource"] for r in body["resources"]} == {"cpu", "mem"}


def test_get_job(client: TestClient, committed: int):
    """A job document includes its resource rows."""
    body = client.get("/api/jobs/j1").json()
    assert body["status"] == "RUNNING"
    assert body["resources"] == [{"resource": "cpu", "requested": 4, "allocated": 4}]


def test_get_partition(client: TestClient, committed: int):
    """A partition document carries its aggregates."""
    body = client.get("/api/partitions/batch").json()
    assert body["usage"]["total_nodes"] == 1
    assert body["usage"]["total_cpus"] == 8


@pytest.mark.parametrize("path", ["/api/nodes/x", "/api/jobs/x", "/api/partitions/x"])
def test_unknown_entity_is_404(client: TestClient, committed: int, path: str):
    """Unknown entities answer 404 with a JSON error body."""
    response = client.get(path)
    assert response.status_code == 404
    assert "not found" in response.json()["error"]


def test_list_endpoints(client: TestClient, committed: int):
    """Collection endpoints list every entity."""
    assert [n["name"] for n in client.get("/api/nodes").json()] == ["n1"]
    assert [j["job_id"] for j in client.get("/api/jobs").json()] == ["j1"]
    assert [p["name"] for p in client.get("/api/partitions").json()] == ["batch"]


def test_allocations_filter(client: TestClient, committed: int):
    """Allocations can be filtered by job and node."""
    assert len(client.get("/api/allocations").json()) == 1
    assert len(client.get("/api/allocations", params={"node": "n1"}).json()) == 1
    assert client.get("/api/allocations", params={"job": "j2"}).json() == []


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def test_metrics_endpoint(client: TestClient, committed: int):
    """The metrics path exposes the committed state."""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "slurm_state_version 1.0" in response.text
    assert 'slurm_partition_cpus_idle{partition="batch"} 4.0' in response.text


# ---------------------------------------------------------------------------
# Configuration and wiring
# ---------------------------------------------------------------------------


def test_load_config_missing_file_raises(tmp_path):
    """A missing config file is reported clearly."""
    with pytest.raises(FileNotFoundError, match="Configuration file not found"):
        server.load_config(str(tmp_path / "missing.json"))


def test_load_config_applies_defaults(tmp_path):
    """Only the REST API URL is required."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"rest_api_url": "http://slurm:6820"}))

    config = server.load_config(str(path))

    assert config.poll_interval == 30.0
    assert config.reconcile_timeout == 10.0
    assert config.api_prefix == "/api"
    assert config.database_url is None


def test_create_app_uses_env_path_and_runs_poller(
    tmp_path,
    monkeypatch: pytest.MonkeyPatch,
    snapshot_doc: dict[str, Any],
):
    """The app reads its config from the environment and polls during lifespan."""
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "rest_api_url": "http://slurm:6820",
                "poll_interval": 60,
                "database_url": f"sqlite:///{tmp_path / 'state.db'}",
                "api_prefix": "/v1",
            },
        ),
    )
    monkeypatch.setenv(server.CONFIG_ENV_VAR, str(path))
    fetch = MagicMock(return_value=snapshot_doc)
    monkeypatch.setattr(server.sources, "fetch_snapshot", fetch)

    app = server.create_app()
    with TestClient(app) as test_client:
        # The first cycle runs as soon as the poller starts.
        for _ in range(100):
            if test_client.get("/v1/version").json()["version"] >= 1:
                break
            time.sleep(0.05)
        body = test_client.get("/v1/nodes/n1").json()

    assert fetch.called
    assert body["name"] == "n1"
