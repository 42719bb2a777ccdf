"""Tests for the inbound webhook routes and signature checks."""

import json

import pytest
from httpx import ASGITransport, AsyncClient

from incident_bridge.api.signatures import compute_signature, verify_signature
from incident_bridge.config import Settings
from incident_bridge.main import create_app

from tests.fakes import make_config


def incident_event(event_type: str, incident_id: str = "inc_001") -> dict:
    body = {"id": incident_id, "name": "stale snapshot"}
    if event_type.endswith("status_updated_v2"):
        body = {"incident": body, "new_status": {"name": "Fixing"}}
    return {"event_type": event_type, event_type: body}


CREATED = "public_incident.incident_created_v2"
UPDATED = "public_incident.incident_updated_v2"
STATUS_UPDATED = "public_incident.incident_status_updated_v2"


def test_signature_roundtrip():
    body = b'{"event_type":"x"}'
    signature = compute_signature("whsec", body)
    assert signature.startswith("sha256=")
    assert verify_signature("whsec", body, signature)
    assert verify_signature("whsec", body, signature.removeprefix("sha256="))
    assert not verify_signature("other", body, signature)
    assert not verify_signature("whsec", body, None)


# ---------------------------------------------------------------------------
# incident.io webhook
# ---------------------------------------------------------------------------


class TestIncidentWebhook:
    async def test_created_event_creates_record(self, client, servicenow, incident_io):
        incident_io.add_incident("inc_001")

        resp = await client.post("/webhook", json=incident_event(CREATED))

        assert resp.status_code == 200
        data = resp.json()
        assert data["action"] == "created"
        assert data["servicenow_sys_id"] == "sn_001"
        # Values come from the re-fetched incident, not the webhook snapshot
        assert servicenow.created[0]["short_description"] == "Database latency spike"
        assert "X-Trace-Id" in resp.headers

    async def test_status_event_reads_nested_incident(self, client, servicenow, incident_io):
        incident_io.add_incident("inc_001")
        servicenow.add_record("sn_100", u_incident_io_id="inc_001", short_description="Old")

        resp = await client.post("/webhook", json=incident_event(STATUS_UPDATED))

        assert resp.status_code == 200
        assert resp.json()["action"] == "updated"
        assert incident_io.fetches == ["inc_001"]

    async def test_unknown_event_is_acknowledged(self, client, incident_io):
        resp = await client.post("/webhook", json=incident_event("public_incident.follow_up_created_v1"))

        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"
        assert incident_io.fetches == []

    async def test_missing_incident_id_is_acknowledged(self, client):
        resp = await client.post("/webhook", json={"event_type": UPDATED, UPDATED: {}})
        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"

    @pytest.mark.parametrize(
        "payload",
        [
            {"event_type": UPDATED, UPDATED: ["inc_001"]},
            {"event_type": UPDATED, "data": ["inc_001"]},
            {"event_type": UPDATED, "data": "inc_001"},
        ],
    )
    async def test_malformed_body_is_acknowledged(self, client, incident_io, payload):
        resp = await client.post("/webhook", json=payload)
        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"
        assert incident_io.fetches == []

    async def test_missing_required_fields_returns_422(self, client, incident_io):
        incident_io.add_incident("inc_001", name=None)

        resp = await client.post("/webhook", json=incident_event(CREATED))

        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "MAPPING_VALIDATION_ERROR"
        assert error["details"]["missing_fields"] == ["short_description"]

    async def test_platform_failure_returns_502(self, client, servicenow, incident_io):
        incident_io.add_incident("inc_001")
        servicenow.fail_on_create = True

        resp = await client.post("/webhook", json=incident_event(CREATED))

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "UPSTREAM_ERROR"

    async def test_invalid_json(self, client):
        resp = await client.post("/webhook", content=b"not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400


class TestIncidentWebhookSignatures:
    @pytest.fixture
    async def signed_client(self, servicenow, incident_io, sync_state):
        config = make_config({"webhook": {"verify_signature": True, "secret": "whsec"}})
        app = create_app(
            Settings(rate_limit_enabled=False, json_logs=False),
            config,
            servicenow=servicenow,
            incident_io=incident_io,
            state=sync_state,
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    async def test_valid_signature_is_accepted(self, signed_client, incident_io):
        incident_io.add_incident("inc_001")
        body = json.dumps(incident_event(CREATED)).encode()

        resp = await signed_client.post(
            "/webhook",
            content=body,
            headers={"content-type": "application/json", "X-Incident-Signature": compute_signature("whsec", body)},
        )

        assert resp.status_code == 200

    async def test_bad_signature_is_rejected(self, signed_client, incident_io):
        body = json.dumps(incident_event(CREATED)).encode()

        resp = await signed_client.post(
            "/webhook",
            content=body,
            headers={"content-type": "application/json", "X-Incident-Signature": "sha256=deadbeef"},
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTHENTICATION_ERROR"
        assert incident_io.fetches == []


# ---------------------------------------------------------------------------
# ServiceNow webhook
# ---------------------------------------------------------------------------


class TestServiceNowWebhook:
    async def test_update_is_synced(self, client, servicenow, incident_io):
        servicenow.add_record("sn_200", u_incident_io_id="inc_001", short_description="Renamed")

        resp = await client.post(
            "/webhook/servicenow",
            json={
                "record_id": "sn_200",
                "table_name": "incident",
                "operation": "update",
                "updated_fields": ["short_description"],
                "old_values": {"short_description": "Old"},
            },
        )

        assert resp.status_code == 200
        assert resp.json()["action"] == "updated"
        assert incident_io.edits == [("inc_001", {"name": "Renamed"})]

    @pytest.mark.parametrize(
        "payload",
        [
            {"record_id": "sn_200", "table_name": "incident", "operation": "insert"},
            {"record_id": "sn_200", "table_name": "problem", "operation": "update"},
            {"record_id": "sn_200", "updated_fields": ["short_description"]},
            {"record_id": "sn_200", "table_name": "incident", "updated_fields": ["short_description"]},
            {"record_id": "sn_200", "operation": "update", "updated_fields": ["short_description"]},
        ],
    )
    async def test_other_operations_are_ignored(self, client, incident_io, payload):
        resp = await client.post("/webhook/servicenow", json=payload)

        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"
        assert incident_io.edits == []

    async def test_missing_record_id(self, client):
        resp = await client.post("/webhook/servicenow", json={"operation": "update"})
        assert resp.status_code == 400
