"""Forward sync: incident.io → ServiceNow."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from incident_bridge.errors.exceptions import BridgeError, MappingValidationError, NotFoundError
from incident_bridge.mapping.mapper import FieldMapper
from incident_bridge.models.enums import SyncAction, SyncDirection
from incident_bridge.models.records import IncidentEnvelope, ServiceNowRecord
from incident_bridge.models.results import BulkSyncError, BulkSyncResult, SyncOutcome
from incident_bridge.sync.batching import run_in_batches
from incident_bridge.sync.config import BridgeConfig
from incident_bridge.sync.state import SyncState

logger = logging.getLogger(__name__)

# Journal fields: write-only on ServiceNow, deduplicated by content instead
# of compared against the record.
NOTE_FIELDS = ("work_notes", "comments")


class ForwardSyncEngine:
    """Creates and updates ServiceNow incidents from incident.io incidents."""

    def __init__(
        self,
        servicenow,
        incident_io,
        mapper: FieldMapper,
        config: BridgeConfig,
        state: SyncState,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.servicenow = servicenow
        self.incident_io = incident_io
        self.mapper = mapper
        self.config = config
        self.state = state
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Single-record entry points
    # ------------------------------------------------------------------

    async def create_incident(self, incident_id: str) -> SyncOutcome:
        with self.state.forward_locks.hold(incident_id) as acquired:
            if not acquired:
                return self._duplicate(incident_id)
            return await self._run(self._create, incident_id, "create")

    async def update_incident(self, incident_id: str) -> SyncOutcome:
        with self.state.forward_locks.hold(incident_id) as acquired:
            if not acquired:
                return self._duplicate(incident_id)
            return await self._run(self._update, incident_id, "update")

    async def _run(self, step, incident_id: str, operation: str) -> SyncOutcome:
        try:
            outcome = await step(incident_id)
        except BridgeError as exc:
            logger.error(
                "Forward %s failed for incident %s: %s",
                operation, incident_id, exc.message,
                extra={"incident_id": incident_id, "code": exc.code},
            )
            self._notify("sync_failed", incident_id, {"operation": operation, "error": exc.message})
            raise
        self._notify(f"incident_{outcome.action}", incident_id, outcome.model_dump(exclude_none=True))
        return outcome

    # ------------------------------------------------------------------
    # Create / update, lock already held
    # ------------------------------------------------------------------

    async def _create(self, incident_id: str) -> SyncOutcome:
        existing = await self.servicenow.find_incident_by_incident_io_id(incident_id)
        if existing is not None:
            logger.info(
                "ServiceNow incident already exists, updating instead",
                extra={"incident_id": incident_id, "servicenow_sys_id": existing.sys_id},
            )
            return await self._update(incident_id, existing=existing)
        return await self._create_record(incident_id)

    async def _create_record(self, incident_id: str) -> SyncOutcome:
        """Create the ServiceNow record; the caller has checked none exists."""
        envelope = await self._fetch(incident_id)
        result = await self.mapper.map_for_creation(envelope.as_source(), self.servicenow)
        if result.missing_required:
            raise MappingValidationError("create", result.missing_required)

        fields = dict(result.fields)
        fields.setdefault(self.servicenow.incident_io_id_field, incident_id)
        record = await self.servicenow.create_incident(fields)
        logger.info(
            "Created ServiceNow incident from incident.io",
            extra={
                "incident_id": incident_id,
                "servicenow_sys_id": record.sys_id,
                "servicenow_number": record.number,
            },
        )

        await self._write_back_link(incident_id, record)
        return SyncOutcome(
            action=SyncAction.CREATED,
            incident_id=incident_id,
            servicenow_sys_id=record.sys_id,
            servicenow_number=record.number,
            updated_fields=sorted(fields),
        )

    async def _update(self, incident_id: str, existing: ServiceNowRecord | None = None) -> SyncOutcome:
        if self.state.loop_guard.should_suppress_forward_sync(incident_id):
            return SyncOutcome(
                action=SyncAction.SUPPRESSED,
                incident_id=incident_id,
                message="Recent reverse sync; skipping to avoid a sync loop",
            )

        if existing is None:
            existing = await self.servicenow.find_incident_by_incident_io_id(incident_id)
        if existing is None:
            logger.info("No ServiceNow incident found, creating instead", extra={"incident_id": incident_id})
            return await self._create_record(incident_id)

        envelope = await self._fetch(incident_id)
        result = await self.mapper.map_for_update(envelope.as_source(), self.servicenow, existing.as_dict())
        if result.missing_required:
            raise MappingValidationError("update", result.missing_required)

        fields = self._changed_fields(result.fields, existing)
        if self.config.features.deduplicate_work_notes:
            await self._drop_duplicate_notes(fields, existing.sys_id)

        if not fields:
            logger.info(
                "No changes to sync to ServiceNow",
                extra={"incident_id": incident_id, "servicenow_sys_id": existing.sys_id},
            )
            return SyncOutcome(
                action=SyncAction.NOOP,
                incident_id=incident_id,
                servicenow_sys_id=existing.sys_id,
                servicenow_number=existing.number,
            )

        await self.servicenow.update_incident(existing.sys_id, fields)
        return SyncOutcome(
            action=SyncAction.UPDATED,
            incident_id=incident_id,
            servicenow_sys_id=existing.sys_id,
            servicenow_number=existing.number,
            updated_fields=sorted(fields),
        )

    async def _fetch(self, incident_id: str) -> IncidentEnvelope:
        envelope = await self.incident_io.get_incident(incident_id)
        if envelope is None:
            raise NotFoundError("incident.io incident", incident_id)
        return envelope

    @staticmethod
    def _changed_fields(mapped: dict[str, Any], existing: ServiceNowRecord) -> dict[str, Any]:
        """Drop fields whose value already matches the ServiceNow record."""
        changed = {}
        for field_name, value in mapped.items():
            if field_name in NOTE_FIELDS:
                changed[field_name] = value
                continue
            current = existing.value_of(field_name)
            if current is None or str(current) != str(value):
                changed[field_name] = value
        return changed

    async def _drop_duplicate_notes(self, fields: dict[str, Any], sys_id: str) -> None:
        for field_name in NOTE_FIELDS:
            note = fields.get(field_name)
            if not isinstance(note, str):
                continue
            if await self.servicenow.check_work_note_exists(sys_id, note, field_name):
                logger.info(
                    "Dropping %s already present on ServiceNow incident",
                    field_name,
                    extra={"servicenow_sys_id": sys_id},
                )
                del fields[field_name]

    async def _write_back_link(self, incident_id: str, record: ServiceNowRecord) -> None:
        field_id = self.config.incident_io.servicenow_link_field_id
        if not self.config.features.add_servicenow_link or not field_id:
            return
        try:
            await self.incident_io.add_servicenow_link(
                incident_id, field_id, self.servicenow.record_url(record.sys_id)
            )
        except BridgeError as exc:
            logger.warning(
                "Failed to add ServiceNow link to incident: %s",
                exc.message,
                extra={"incident_id": incident_id, "servicenow_sys_id": record.sys_id},
            )

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def sync_all_incidents(
        self,
        limit: int = 100,
        status: str | None = None,
        dry_run: bool = False,
    ) -> BulkSyncResult:
        """Create or update ServiceNow records for up to ``limit`` incidents."""
        logger.info("Starting bulk incident sync", extra={"limit": limit, "status": status, "dry_run": dry_run})
        incidents = await self.incident_io.list_incidents(status=status, max_records=limit)
        ids = [envelope.id for envelope in incidents if envelope.id]
        result = BulkSyncResult(total=len(ids), dry_run=dry_run)

        async def _sync_one(incident_id: str) -> SyncOutcome:
            if dry_run:
                return SyncOutcome(action=SyncAction.SKIPPED, incident_id=incident_id, message="dry run")
            # update_incident creates the record when none exists yet
            return await self.update_incident(incident_id)

        perf = self.config.performance
        outcomes, result.batches = await run_in_batches(
            ids,
            _sync_one,
            batch_size=perf.batch_size,
            concurrency=perf.concurrent_requests,
            requests_per_minute=perf.requests_per_minute,
            sleep=self._sleep,
            label="incident",
        )
        for incident_id, outcome in zip(ids, outcomes):
            result.record(outcome)
            if isinstance(outcome, Exception):
                message = outcome.message if isinstance(outcome, BridgeError) else str(outcome)
                result.errors.append(BulkSyncError(record_id=incident_id, error=message))

        logger.info("Bulk incident sync completed", extra={"summary": result.model_dump(exclude={"errors"})})
        return result

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    def get_sync_stats(self) -> dict:
        return {
            "cache": self.servicenow.get_cache_stats(),
            "mapping": self.mapper.get_mapping_config(),
            "features": self.config.features.model_dump(),
            **self.state.stats(),
        }

    def clear_caches(self) -> None:
        self.servicenow.clear_cache()

    async def health_check(self) -> dict:
        checks: dict[str, str] = {}
        for name, client in (("servicenow", self.servicenow), ("incident_io", self.incident_io)):
            try:
                await client.test_connection()
                checks[name] = "ok"
            except BridgeError as exc:
                checks[name] = f"error: {exc.message}"
        mapping = self.mapper.validate_configuration()
        checks["field_mappings"] = "ok" if mapping["valid"] else f"error: {'; '.join(mapping['errors'])}"
        return {
            "status": "healthy" if all(value == "ok" for value in checks.values()) else "unhealthy",
            "checks": checks,
        }

    def _duplicate(self, incident_id: str) -> SyncOutcome:
        logger.warning(
            "Incident is already being processed, skipping duplicate trigger",
            extra={"incident_id": incident_id, "direction": SyncDirection.FORWARD},
        )
        return SyncOutcome(action=SyncAction.DUPLICATE, incident_id=incident_id)

    @staticmethod
    def _notify(event: str, incident_id: str, data: dict) -> None:
        logger.info("sync_event", extra={"sync_event_type": event, "incident_id": incident_id, "data": data})
