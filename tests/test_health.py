"""Tests for health and manual sync endpoints."""

from httpx import ASGITransport, AsyncClient

from incident_bridge.config import Settings
from incident_bridge.main import create_app

from tests.fakes import FakeIncidentIO, FakeServiceNow, make_config


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["servicenow_instance"] == "https://example.service-now.com"
    assert data["features"]["sync_status"] is True


async def test_ready(client):
    resp = await client.get("/health/ready")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ready"
    assert data["checks"]["field_mappings"] == "ok"


async def test_not_ready_when_platform_unreachable(client, servicenow):
    from incident_bridge.errors.exceptions import PlatformError

    async def unreachable():
        raise PlatformError("servicenow", "GET /table/incident failed: connection refused")

    servicenow.test_connection = unreachable

    resp = await client.get("/health/ready")

    assert resp.status_code == 503
    assert resp.json()["checks"]["servicenow"].startswith("error:")


async def test_trace_id_is_propagated(client):
    resp = await client.get("/health", headers={"X-Trace-Id": "trc_fixed"})
    assert resp.headers["X-Trace-Id"] == "trc_fixed"


class TestManualSync:
    async def test_force_create(self, client, servicenow, incident_io):
        incident_io.add_incident("inc_001")

        resp = await client.post("/sync/incident/inc_001", json={"action": "create"})

        assert resp.status_code == 200
        assert resp.json()["action"] == "created"
        assert len(servicenow.created) == 1

    async def test_manual_path_respects_loop_guard(self, client, incident_io, sync_state):
        incident_io.add_incident("inc_001")
        sync_state.loop_guard.record_reverse_write("inc_001")

        resp = await client.post("/sync/incident/inc_001", json={"action": "update"})

        assert resp.json()["action"] == "suppressed"

    async def test_force_reverse_sync(self, client, servicenow, incident_io):
        servicenow.add_record("sn_200", u_incident_io_id="inc_001", description="New summary")

        resp = await client.post("/sync/servicenow/sn_200", json={"updated_fields": ["description"]})

        assert resp.status_code == 200
        assert incident_io.edits == [("inc_001", {"summary": "New summary"})]

    async def test_bulk(self, client, incident_io):
        incident_io.add_incident("inc_001")
        incident_io.add_incident("inc_002")

        resp = await client.post("/sync/bulk", json={"limit": 10, "dry_run": True})

        assert resp.status_code == 200
        assert resp.json()["skipped"] == 2

    async def test_bulk_writes_and_summarises(self, client, servicenow, incident_io):
        incident_io.add_incident("inc_001")
        incident_io.add_incident("inc_002")

        resp = await client.post("/sync/bulk", json={"limit": 10})

        assert resp.status_code == 200
        assert resp.json()["created"] == 2
        assert len(servicenow.created) == 2

    async def test_bulk_servicenow_resync(self, client, servicenow, incident_io):
        servicenow.add_record("sn_200", u_incident_io_id="inc_001", short_description="Renamed")

        resp = await client.post("/sync/bulk/servicenow", json={"query": "active=true"})

        assert resp.status_code == 200
        assert resp.json()["successful"] == 1
        assert servicenow.queries == ["u_incident_io_idISNOTEMPTY^active=true"]
        assert incident_io.edits == [("inc_001", {"name": "Renamed"})]

    async def test_stats_and_clear(self, client, servicenow):
        stats = await client.get("/sync/stats")
        assert stats.status_code == 200
        assert "loop_guard_entries" in stats.json()

        resp = await client.post("/sync/caches/clear")
        assert resp.json()["status"] == "cleared"
        assert servicenow.cache_cleared is True

    async def test_disabled_feature_is_not_found(self):
        config = make_config({"features": {"enable_manual_sync_endpoints": False}})
        app = create_app(
            Settings(rate_limit_enabled=False, json_logs=False),
            config,
            servicenow=FakeServiceNow(),
            incident_io=FakeIncidentIO(),
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.post("/sync/incident/inc_001", json={"action": "update"})

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "FEATURE_DISABLED"


async def test_rate_limit():
    app = create_app(
        Settings(rate_limit_enabled=True, rate_limit_per_minute=2, json_logs=False),
        make_config(),
        servicenow=FakeServiceNow(),
        incident_io=FakeIncidentIO(),
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        responses = [await ac.get("/health") for _ in range(3)]
        webhook = await ac.post("/webhook/servicenow", json={"record_id": "sn_1"})

    assert [resp.status_code for resp in responses] == [200, 200, 429]
    assert responses[2].json()["error"]["code"] == "RATE_LIMITED"
    assert "X-Trace-Id" in responses[2].headers
    assert webhook.status_code == 429
