import asyncio

import pytest
from fastapi.testclient import TestClient

from mcph_Server_API.app.core.Health.checker import (
    DependencyHealth,
    HealthChecker,
    HealthStatus,
    aggregate_status,
    status_code_for,
)
from mcph_Server_API.app.main import create_app


def _dep(status):
    return DependencyHealth("dep", status, 1.0)


@pytest.mark.parametrize(
    "statuses,expected",
    [
        ([HealthStatus.HEALTHY, HealthStatus.HEALTHY], HealthStatus.HEALTHY),
        ([HealthStatus.HEALTHY, HealthStatus.UNHEALTHY], HealthStatus.DEGRADED),
        ([HealthStatus.UNHEALTHY, HealthStatus.UNHEALTHY], HealthStatus.UNHEALTHY),
        ([], HealthStatus.HEALTHY),
    ],
)
def test_aggregate_status(statuses, expected):
    assert aggregate_status([_dep(s) for s in statuses]) is expected


def test_degraded_still_serves_traffic():
    assert status_code_for("healthy") == 200
    assert status_code_for("degraded") == 200
    assert status_code_for("unhealthy") == 503


@pytest.mark.asyncio
async def test_slow_probe_times_out_without_holding_up_others():
    async def fast():
        return None

    async def slow():
        await asyncio.sleep(5)

    async def broken():
        raise ConnectionError("refused")

    checker = HealthChecker(timeout_seconds=0.05)
    checker.register_probe("fast", fast)
    checker.register_probe("slow", slow)
    checker.register_probe("broken", broken)

    report = await asyncio.wait_for(checker.readiness(), timeout=2)

    by_name = {d["name"]: d for d in report["dependencies"]}
    assert by_name["fast"]["status"] == "healthy"
    assert by_name["slow"]["status"] == "unhealthy"
    assert by_name["slow"]["error"].startswith("Timed out")
    assert by_name["broken"]["error"] == "refused"
    assert report["status"] == "degraded"


@pytest.mark.asyncio
async def test_detailed_status_adds_environment(metadata_store):
    checker = HealthChecker(version="9.9.9", environment="staging")
    checker.register_probe("metadata_store", metadata_store.ping)

    report = await checker.detailed_status()

    assert report["version"] == "9.9.9"
    assert report["environment"] == "staging"
    assert report["pythonVersion"]
    assert "pid" in report["system"]


def test_liveness_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}

    live = client.get("/health/live")
    assert live.status_code == 200
    assert live.json()["status"] == "alive"
    assert live.json()["uptime"] >= 0


def test_readiness_reflects_store_health(client, metadata_store, blob_store):
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert {d["name"] for d in r.json()["dependencies"]} == {"metadata_store", "blob_store"}

    blob_store.available = False
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json()["status"] == "degraded"

    metadata_store.available = False
    r = client.get("/health/ready")
    assert r.status_code == 503
    assert r.json()["status"] == "unhealthy"


def test_health_status_includes_server(client, mcp_server):
    r = client.get("/health/status")
    assert r.status_code == 200
    body = r.json()
    assert body["server"]["tools"] == len(mcp_server.registry)
    assert body["server"]["status"] == "initializing"
    assert "metrics" in body


def test_lifespan_starts_and_stops_server(mcp_server):
    with TestClient(create_app(mcp_server)) as client:
        assert mcp_server.initialized
        assert client.get("/health/status").json()["server"]["status"] == "running"
    assert not mcp_server.initialized
