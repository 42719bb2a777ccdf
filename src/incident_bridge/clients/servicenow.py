"""ServiceNow table API client."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from incident_bridge.clients.base import PlatformClient, TTLCache
from incident_bridge.errors.exceptions import PlatformError
from incident_bridge.models.records import ServiceNowRecord

logger = logging.getLogger(__name__)

_NOT_CACHED = object()


class ServiceNowClient(PlatformClient):
    """Basic-auth client for ``{instance}/api/now/table/...``.

    Owns the user and reference lookup caches used by the field mapper.
    """

    platform = "servicenow"

    def __init__(
        self,
        instance_url: str,
        username: str,
        password: str,
        *,
        table: str = "incident",
        incident_io_id_field: str = "u_incident_io_id",
        cache_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        **kwargs,
    ):
        self.instance_url = instance_url.rstrip("/")
        self.table = table
        self.incident_io_id_field = incident_io_id_field
        self.lookup_cache = TTLCache(cache_ttl_seconds, clock)
        super().__init__(
            f"{self.instance_url}/api/now",
            auth=httpx.BasicAuth(username, password),
            **kwargs,
        )

    @classmethod
    def from_config(cls, config, **kwargs) -> ServiceNowClient:
        return cls(
            config.instance_url,
            config.username,
            config.password,
            table=config.table,
            incident_io_id_field=config.incident_io_id_field,
            cache_ttl_seconds=config.cache_ttl_seconds,
            timeout=config.timeout,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay,
            **kwargs,
        )

    def _table_url(self, sys_id: str | None = None, table: str | None = None) -> str:
        url = f"/table/{table or self.table}"
        return f"{url}/{sys_id}" if sys_id else url

    # ------------------------------------------------------------------
    # Incident records
    # ------------------------------------------------------------------

    async def get_incident(self, sys_id: str) -> ServiceNowRecord | None:
        try:
            data = await self.get_json(self._table_url(sys_id))
        except PlatformError as exc:
            if exc.http_status == 404:
                return None
            raise
        return ServiceNowRecord.model_validate(data["result"])

    async def find_incident_by_incident_io_id(self, incident_id: str) -> ServiceNowRecord | None:
        data = await self.get_json(
            self._table_url(),
            params={
                "sysparm_query": f"{self.incident_io_id_field}={incident_id}",
                "sysparm_limit": 1,
            },
        )
        results = data.get("result") or []
        return ServiceNowRecord.model_validate(results[0]) if results else None

    async def get_incident_io_id(self, sys_id: str) -> str | None:
        """Cross-referenced incident.io id stored on a ServiceNow record."""
        try:
            data = await self.get_json(
                self._table_url(sys_id),
                params={"sysparm_fields": self.incident_io_id_field},
            )
        except PlatformError as exc:
            if exc.http_status == 404:
                return None
            raise
        value = (data.get("result") or {}).get(self.incident_io_id_field)
        if isinstance(value, dict):
            value = value.get("value")
        return value or None

    async def create_incident(self, fields: dict[str, Any]) -> ServiceNowRecord:
        response = await self.request("POST", self._table_url(), json=fields)
        record = ServiceNowRecord.model_validate(response.json()["result"])
        logger.info(
            "Created ServiceNow incident",
            extra={"servicenow_sys_id": record.sys_id, "servicenow_number": record.number},
        )
        return record

    async def update_incident(self, sys_id: str, fields: dict[str, Any]) -> ServiceNowRecord:
        response = await self.request("PATCH", self._table_url(sys_id), json=fields)
        logger.info(
            "Updated ServiceNow incident",
            extra={"servicenow_sys_id": sys_id, "updated_fields": list(fields)},
        )
        return ServiceNowRecord.model_validate(response.json()["result"])

    async def list_incidents(
        self,
        query: str | None = None,
        page_size: int = 100,
        max_records: int | None = None,
    ) -> list[ServiceNowRecord]:
        """Offset-paginated listing of the incident table."""
        records: list[ServiceNowRecord] = []
        offset = 0
        while True:
            params: dict[str, Any] = {"sysparm_limit": page_size, "sysparm_offset": offset}
            if query:
                params["sysparm_query"] = query
            data = await self.get_json(self._table_url(), params=params)
            page = data.get("result") or []
            records.extend(ServiceNowRecord.model_validate(row) for row in page)
            if max_records is not None and len(records) >= max_records:
                return records[:max_records]
            if len(page) < page_size:
                return records
            offset += page_size

    # ------------------------------------------------------------------
    # Work notes
    # ------------------------------------------------------------------

    async def get_work_notes(self, sys_id: str, field: str = "work_notes") -> str:
        data = await self.get_json(
            self._table_url(sys_id),
            params={"sysparm_fields": field, "sysparm_display_value": "true"},
        )
        value = (data.get("result") or {}).get(field) or ""
        if isinstance(value, dict):
            value = value.get("display_value") or ""
        return value

    async def get_journal_entries(self, sys_id: str, field: str = "work_notes") -> list[str]:
        data = await self.get_json(
            self._table_url(table="sys_journal_field"),
            params={
                "sysparm_query": f"element_id={sys_id}^element={field}",
                "sysparm_fields": "value",
            },
        )
        return [row.get("value") or "" for row in data.get("result") or []]

    async def check_work_note_exists(self, sys_id: str, note: str, field: str = "work_notes") -> bool:
        """True if ``note`` already appears verbatim in the record's note history."""
        content = note.strip()
        if not content:
            return False
        for entry in await self.get_journal_entries(sys_id, field):
            if entry.strip() == content:
                return True
        return content in await self.get_work_notes(sys_id, field)

    # ------------------------------------------------------------------
    # Cached lookups
    # ------------------------------------------------------------------

    async def lookup_user(self, value: str, lookup_field: str = "name") -> str | None:
        return await self.lookup_reference("sys_user", value, lookup_field)

    async def lookup_reference(self, table: str, value: str, lookup_field: str = "name") -> str | None:
        """Resolve a display value to a ``sys_id``. Misses are cached too."""
        key = (table, lookup_field, value)
        cached = self.lookup_cache.get(key, _NOT_CACHED)
        if cached is not _NOT_CACHED:
            return cached

        data = await self.get_json(
            self._table_url(table=table),
            params={
                "sysparm_query": f"{lookup_field}={value}",
                "sysparm_fields": "sys_id",
                "sysparm_limit": 1,
            },
        )
        results = data.get("result") or []
        sys_id = results[0].get("sys_id") if results else None
        self.lookup_cache.set(key, sys_id)
        return sys_id

    def get_cache_stats(self) -> dict:
        return self.lookup_cache.stats()

    def clear_cache(self) -> None:
        self.lookup_cache.clear()
        logger.info("ServiceNow lookup cache cleared")

    async def test_connection(self) -> bool:
        await self.get_json(self._table_url(), params={"sysparm_limit": 1, "sysparm_fields": "sys_id"})
        return True

    def record_url(self, sys_id: str) -> str:
        """Link to the record in the classic UI."""
        return (
            f"{self.instance_url}/now/nav/ui/classic/params/target/"
            f"{self.table}.do%3Fsys_id%3D{sys_id}"
        )
