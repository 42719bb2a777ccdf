"""incident.io v2 API client."""

from __future__ import annotations

import logging
from typing import Any

from incident_bridge.clients.base import PlatformClient
from incident_bridge.errors.exceptions import PlatformError
from incident_bridge.models.records import IncidentEnvelope

logger = logging.getLogger(__name__)


class IncidentIOClient(PlatformClient):
    platform = "incident.io"

    def __init__(self, api_url: str, api_key: str, **kwargs):
        super().__init__(api_url, headers={"Authorization": f"Bearer {api_key}"}, **kwargs)

    @classmethod
    def from_config(cls, config, **kwargs) -> IncidentIOClient:
        return cls(
            config.api_url,
            config.api_key,
            timeout=config.timeout,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay,
            **kwargs,
        )

    async def get_incident(self, incident_id: str) -> IncidentEnvelope | None:
        try:
            data = await self.get_json(f"/incidents/{incident_id}")
        except PlatformError as exc:
            if exc.http_status == 404:
                return None
            raise
        return IncidentEnvelope.from_api(data)

    async def list_incidents(
        self,
        page_size: int = 25,
        status: str | None = None,
        max_records: int | None = None,
    ) -> list[IncidentEnvelope]:
        """Cursor-paginated listing, following ``pagination_meta.after``."""
        incidents: list[IncidentEnvelope] = []
        after: str | None = None
        while True:
            params: dict[str, Any] = {"page_size": page_size}
            if status:
                params["status_category[one_of]"] = status
            if after:
                params["after"] = after
            data = await self.get_json("/incidents", params=params)
            incidents.extend(IncidentEnvelope.from_api(row) for row in data.get("incidents") or [])
            if max_records is not None and len(incidents) >= max_records:
                return incidents[:max_records]
            after = (data.get("pagination_meta") or {}).get("after")
            if not after:
                return incidents

    async def update_incident(self, incident_id: str, fields: dict[str, Any], notify_channel: bool = True) -> dict:
        response = await self.request(
            "POST",
            f"/incidents/{incident_id}/actions/edit",
            json={"incident": fields, "notify_incident_channel": notify_channel},
        )
        logger.info(
            "Updated incident.io incident",
            extra={"incident_id": incident_id, "updated_fields": list(fields)},
        )
        return response.json()

    async def add_incident_update(
        self,
        incident_id: str,
        message: str,
        status: str | None = None,
        severity: str | None = None,
    ) -> dict:
        """Post a timeline update, optionally moving status and severity with it."""
        body: dict[str, Any] = {"message": message}
        if status:
            body["new_incident_status_id"] = status
        if severity:
            body["new_severity_id"] = severity
        response = await self.request("POST", f"/incidents/{incident_id}/updates", json=body)
        logger.info("Added incident.io update", extra={"incident_id": incident_id})
        return response.json()

    async def update_custom_fields(self, incident_id: str, entries: list[dict], notify_channel: bool = True) -> dict:
        return await self.update_incident(
            incident_id, {"custom_field_entries": entries}, notify_channel=notify_channel
        )

    async def add_servicenow_link(self, incident_id: str, custom_field_id: str, url: str) -> dict:
        entries = [{
            "custom_field_id": custom_field_id,
            "values": [{"value_link": url}],
        }]
        logger.info("Adding ServiceNow link to incident", extra={"incident_id": incident_id, "url": url})
        return await self.update_custom_fields(incident_id, entries)

    async def test_connection(self) -> bool:
        await self.get_json("/incidents", params={"page_size": 1})
        return True
