"""Normalised record shapes fetched from the two platforms."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IncidentEnvelope(BaseModel):
    """An incident.io incident as fetched from the v2 API.

    The API wraps single incidents as ``{"incident": {...}}`` while list
    endpoints return them bare. Mapping rules always address the wrapped
    form (``incident.name``, ``incident.severity.name``), so both are
    normalised here before any rule sees them.
    """

    model_config = ConfigDict(frozen=True)

    incident: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict) -> IncidentEnvelope:
        if isinstance(data.get("incident"), dict):
            incident = dict(data["incident"])
        else:
            incident = dict(data)
        if not incident.get("name") and incident.get("title"):
            incident["name"] = incident["title"]
        return cls(incident=incident)

    @property
    def id(self) -> str | None:
        value = self.incident.get("id")
        return str(value) if value else None

    def as_source(self) -> dict:
        """The dict the field mapper resolves source paths against."""
        return {"incident": self.incident}


class ServiceNowRecord(BaseModel):
    """A row of the ServiceNow incident table."""

    model_config = ConfigDict(extra="allow")

    sys_id: str
    number: str | None = None

    def get(self, field: str, default: Any = None) -> Any:
        if field in ("sys_id", "number"):
            return getattr(self, field)
        return (self.model_extra or {}).get(field, default)

    def value_of(self, field: str) -> Any:
        """Plain value of a field, unwrapping ``{value, display_value}`` pairs."""
        value = self.get(field)
        if isinstance(value, dict):
            return value.get("value")
        return value

    def as_dict(self) -> dict:
        return self.model_dump()
