"""Inbound webhook payloads and manual trigger request bodies."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from incident_bridge.models.enums import IncidentEventType


class IncidentWebhook(BaseModel):
    """Normalised incident.io webhook.

    incident.io keys the event body by its event type. Created and updated
    events carry the incident itself; the status event nests it under
    ``incident``. Only the id and the kind are trusted; the incident is always
    re-fetched before mapping.
    """

    event_type: str
    incident_id: str | None = None
    event: IncidentEventType | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> IncidentWebhook:
        event_type = str(payload.get("event_type") or "")
        body = payload.get(event_type)
        if not isinstance(body, dict):
            body = payload.get("data")
        if not isinstance(body, dict):
            body = {}
        incident = body.get("incident") if isinstance(body.get("incident"), dict) else body
        if not incident.get("id") and isinstance(payload.get("incident"), dict):
            incident = payload["incident"]

        try:
            event = IncidentEventType(event_type)
        except ValueError:
            event = None

        incident_id = incident.get("id")
        return cls(
            event_type=event_type,
            incident_id=str(incident_id) if incident_id else None,
            event=event,
        )

    @property
    def is_creation(self) -> bool:
        return self.event == IncidentEventType.CREATED

    @property
    def is_update(self) -> bool:
        return self.event in (IncidentEventType.UPDATED, IncidentEventType.STATUS_UPDATED)


class ServiceNowChange(BaseModel):
    """Change notification posted by a ServiceNow business rule."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sys_id: str = Field(validation_alias=AliasChoices("record_id", "sys_id"))
    table: str | None = Field(None, validation_alias=AliasChoices("table_name", "table"))
    operation: str | None = None
    updated_fields: list[str] = Field(default_factory=list)
    old_values: dict[str, Any] = Field(default_factory=dict)


class ManualIncidentSyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["create", "update"] = "update"


class ManualServiceNowSyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    updated_fields: list[str] = Field(default_factory=list)
    old_values: dict[str, Any] = Field(default_factory=dict)


class BulkSyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int = Field(100, gt=0, le=1000)
    status: str | None = None
    dry_run: bool = False


class ServiceNowBulkSyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int = Field(100, gt=0, le=1000)
    query: str | None = None
    updated_fields: list[str] | None = None
