############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# test_api.py: Unit tests for the HTTP API
#
############################################################

"""Unit tests for the fleet HTTP API using FastAPI's TestClient."""

from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from fleetrouter.core.fleet_config import build_definition
from fleetrouter.core.query import build_service, set_query_service
from fleetrouter.main import create_app


@pytest.fixture
def client(fleet_document, settings, fake_prober):
    definition = build_definition(fleet_document, settings)
    service = build_service(definition, settings, prober=fake_prober)

    @asynccontextmanager
    async def lifespan(app):
        await service.aggregator.start()
        set_query_service(service)
        yield
        await service.aggregator.stop()
        set_query_service(None)

    with TestClient(create_app(lifespan_handler=lifespan), raise_server_exceptions=False) as c:
        yield c


class TestHealthEndpoints:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readyz(self, client):
        response = client.get("/readyz")
        assert response.status_code == 200
        assert response.json()["checks"] == {"aggregator": True, "snapshot": True}

    def test_readyz_without_fleet(self):
        @asynccontextmanager
        async def lifespan(app):
            set_query_service(None)
            yield

        with TestClient(create_app(lifespan_handler=lifespan)) as c:
            response = c.get("/readyz")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "fleetrouter_nodes" in response.text
        assert "fleetrouter_snapshot_age_seconds" in response.text

    def test_request_id_header(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
        assert response.headers["x-request-id"] == "abc-123"


class TestSnapshotEndpoint:
    def test_snapshot(self, client):
        data = client.get("/api/fleet/snapshot").json()

        assert data["summary"]["nodes"] == 3
        assert data["ageSeconds"] >= 0
        assert [n["name"] for n in data["nodes"]] == ["nodeA", "nodeB", "nodeC"]
        assert data["nodes"][0]["tier"] == "Large"
        assert data["backends"][-1]["kind"] == "RemoteApi"


class TestRouteEndpoints:
    def test_post_route(self, client):
        response = client.post(
            "/api/fleet/route",
            json={"requestingNodeID": "nodeC", "workloadHint": ""},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["requestingNode"] == "nodeC"
        assert data["backends"][-1]["kind"] == "RemoteApi"

    def test_post_route_requires_node(self, client):
        response = client.post("/api/fleet/route", json={"workloadHint": "metered"})
        assert response.status_code == 422

    def test_get_route(self, client):
        response = client.get("/api/fleet/route/nodeA", params={"hint": "metered"})
        assert response.status_code == 200
        assert response.json()["workloadHint"] == "metered"

    def test_bad_hint(self, client):
        response = client.get("/api/fleet/route/nodeA", params={"hint": "min-tier=Bogus"})
        assert response.status_code == 422
        assert "unknown tier" in response.json()["detail"]

    def test_unknown_requester_still_gets_fallback(self, client):
        response = client.get("/api/fleet/route/not-in-fleet")
        assert response.status_code == 200
        assert response.json()["backends"]


class TestNodeEndpoints:
    def test_deregister(self, client):
        assert client.delete("/api/fleet/nodes/nodeC").status_code == 204

        names = [n["name"] for n in client.get("/api/fleet/snapshot").json()["nodes"]]
        assert "nodeC" not in names

    def test_deregister_unknown(self, client):
        assert client.delete("/api/fleet/nodes/ghost").status_code == 404

    def test_capability_push(self, client):
        response = client.put(
            "/api/fleet/nodes/nodeC/capability",
            json={"gpuVendor": "NVIDIA", "vramGb": 12, "primaryModel": "deepseek-coder-v2:16b"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["capabilities"]["vramGb"] == 12
        assert data["tier"] == "Large"

    def test_capability_push_unknown_node(self, client):
        response = client.put("/api/fleet/nodes/ghost/capability", json={"vramGb": 4})
        assert response.status_code == 404

    def test_capability_push_invalid(self, client):
        response = client.put(
            "/api/fleet/nodes/nodeC/capability", json={"gpuMemoryThreshold": 2}
        )
        assert response.status_code == 422
