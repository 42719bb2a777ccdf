"""Reverse sync: ServiceNow → incident.io.

The ServiceNow-side field set is small and fixed, so the correspondence is
written out here rather than driven by the mapping configuration.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from incident_bridge.errors.exceptions import BridgeError
from incident_bridge.models.enums import SyncAction, SyncDirection
from incident_bridge.models.records import ServiceNowRecord
from incident_bridge.models.results import BulkSyncError, BulkSyncResult, SyncOutcome
from incident_bridge.models.webhook import ServiceNowChange
from incident_bridge.sync.batching import run_in_batches
from incident_bridge.sync.config import BridgeConfig
from incident_bridge.sync.state import SyncState

logger = logging.getLogger(__name__)

WORK_NOTE_PREFIX = "ServiceNow Work Note: "

TEXT_FIELDS = {
    "short_description": "name",
    "description": "summary",
}
STATUS_FIELDS = ("incident_state", "state")
SEVERITY_FIELDS = ("priority", "urgency", "impact")
# Re-pushed by a bulk resync. Work notes have no previous value to diff against.
RESYNC_FIELDS = (*TEXT_FIELDS, *STATUS_FIELDS, "priority")

_LEADING_INT_RE = re.compile(r"^\s*(\d+)")


@dataclass
class ReverseUpdate:
    """What one ServiceNow change turns into on the incident.io side."""

    fields: dict[str, Any] = field(default_factory=dict)
    note: str | None = None
    status_id: str | None = None
    severity_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.fields or self.note or self.status_id or self.severity_id)

    def changed(self) -> list[str]:
        names = list(self.fields)
        if self.note:
            names.append("update")
        if self.status_id:
            names.append("incident_status")
        if self.severity_id:
            names.append("severity")
        return names


def extract_new_work_notes(full_notes: str | None, old_notes: str | None) -> str | None:
    """Return the newly added portion of a work-notes journal.

    ServiceNow renders the newest entry first, so the delta is the leading
    ``len(full) - len(old)`` characters. Anything that did not grow yields
    no delta.
    """
    if not full_notes:
        return None
    if not old_notes:
        return full_notes.strip() or None
    grown = len(full_notes) - len(old_notes)
    if grown <= 0:
        return None
    return full_notes[:grown].strip() or None


def parse_ordinal(value: Any) -> int | None:
    """Leading integer of a ServiceNow choice value such as ``"2 - High"``."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_INT_RE.match(str(value))
    return int(match.group(1)) if match else None


class ReverseSyncEngine:
    """Pushes ServiceNow edits to the cross-referenced incident.io incident."""

    def __init__(
        self,
        servicenow,
        incident_io,
        config: BridgeConfig,
        state: SyncState,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.servicenow = servicenow
        self.incident_io = incident_io
        self.config = config
        self.state = state
        self._sleep = sleep

    async def handle_servicenow_update(
        self,
        sys_id: str,
        updated_fields: Iterable[str],
        old_values: dict[str, Any] | None = None,
    ) -> SyncOutcome:
        updated_fields = list(updated_fields)
        old_values = old_values or {}

        with self.state.reverse_locks.hold(sys_id) as acquired:
            if not acquired:
                logger.warning(
                    "ServiceNow record is already being processed, skipping duplicate trigger",
                    extra={"servicenow_sys_id": sys_id, "direction": SyncDirection.REVERSE},
                )
                return SyncOutcome(action=SyncAction.DUPLICATE, servicenow_sys_id=sys_id)

            try:
                return await self._sync(sys_id, updated_fields, old_values)
            except BridgeError as exc:
                logger.error(
                    "Reverse sync failed for ServiceNow record %s: %s",
                    sys_id, exc.message,
                    extra={"servicenow_sys_id": sys_id, "code": exc.code},
                )
                raise

    async def _sync(self, sys_id: str, updated_fields: list[str], old_values: dict[str, Any]) -> SyncOutcome:
        incident_id = await self.servicenow.get_incident_io_id(sys_id)
        if not incident_id:
            logger.debug("ServiceNow record is not linked to an incident.io incident", extra={"servicenow_sys_id": sys_id})
            return SyncOutcome(action=SyncAction.SKIPPED, servicenow_sys_id=sys_id, message="not linked")

        record = await self.servicenow.get_incident(sys_id)
        if record is None:
            logger.error("ServiceNow record disappeared before it could be synced", extra={"servicenow_sys_id": sys_id})
            return SyncOutcome(
                action=SyncAction.SKIPPED,
                incident_id=incident_id,
                servicenow_sys_id=sys_id,
                message="record not found",
            )

        update = self.map_servicenow_to_incident_io(record, updated_fields, old_values)
        if update.is_empty:
            logger.info(
                "No mappable changes to sync to incident.io",
                extra={"servicenow_sys_id": sys_id, "updated_fields": updated_fields},
            )
            return SyncOutcome(
                action=SyncAction.NOOP,
                incident_id=incident_id,
                servicenow_sys_id=sys_id,
                servicenow_number=record.number,
            )

        await self.apply_incident_io_updates(incident_id, update)
        logger.info(
            "Synced ServiceNow changes to incident.io",
            extra={"incident_id": incident_id, "servicenow_sys_id": sys_id, "changes": update.changed()},
        )
        return SyncOutcome(
            action=SyncAction.UPDATED,
            incident_id=incident_id,
            servicenow_sys_id=sys_id,
            servicenow_number=record.number,
            updated_fields=update.changed(),
        )

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def map_servicenow_to_incident_io(
        self,
        record: ServiceNowRecord,
        updated_fields: list[str],
        old_values: dict[str, Any],
    ) -> ReverseUpdate:
        update = ReverseUpdate()
        changed = set(updated_fields)

        for sn_field, io_field in TEXT_FIELDS.items():
            if sn_field in changed:
                value = record.value_of(sn_field)
                if value:
                    update.fields[io_field] = value

        if "work_notes" in changed:
            delta = extract_new_work_notes(record.value_of("work_notes"), old_values.get("work_notes"))
            if delta:
                update.note = f"{WORK_NOTE_PREFIX}{delta}"

        features = self.config.features
        if features.sync_status and changed.intersection(STATUS_FIELDS):
            update.status_id = self.map_status(record)
        if features.sync_severity and changed.intersection(SEVERITY_FIELDS):
            update.severity_id = self.map_severity(record)

        return update

    def map_status(self, record: ServiceNowRecord) -> str | None:
        """ServiceNow state → incident.io status id, restricted to the allowed set."""
        mappings = self.config.reverse_mappings
        state = next(
            (record.value_of(name) for name in STATUS_FIELDS if record.value_of(name) is not None),
            None,
        )
        ordinal = parse_ordinal(state)
        if ordinal is None:
            return None
        status_id = mappings.status.get(str(ordinal))
        if status_id is None:
            logger.warning("No incident.io status mapped for ServiceNow state", extra={"state": state})
            return None
        if mappings.allowed_statuses and status_id not in mappings.allowed_statuses:
            logger.warning(
                "Mapped status is outside the allowed set",
                extra={"state": state, "status_id": status_id},
            )
            return None
        return status_id

    def map_severity(self, record: ServiceNowRecord) -> str | None:
        """Priority → severity id. Without a priority, the more urgent of urgency and impact."""
        ordinal = parse_ordinal(record.value_of("priority"))
        if ordinal is None:
            candidates = [
                value for value in (
                    parse_ordinal(record.value_of("urgency")),
                    parse_ordinal(record.value_of("impact")),
                )
                if value is not None
            ]
            ordinal = min(candidates) if candidates else None
        if ordinal is None:
            return None
        severity_id = self.config.reverse_mappings.severity.get(str(ordinal))
        if severity_id is None:
            logger.warning("No incident.io severity mapped for ServiceNow priority", extra={"priority": ordinal})
        return severity_id

    async def apply_incident_io_updates(self, incident_id: str, update: ReverseUpdate) -> None:
        """Field edits and the timeline update are separate incident.io calls.

        Each write that lands is recorded in the loop guard straight away, so
        a failure in the second call still suppresses the echoed webhook.
        """
        if update.fields:
            await self.incident_io.update_incident(incident_id, update.fields)
            self.state.loop_guard.record_reverse_write(incident_id)

        if update.note or update.status_id or update.severity_id:
            await self.incident_io.add_incident_update(
                incident_id,
                update.note or "Updated from ServiceNow",
                status=update.status_id,
                severity=update.severity_id,
            )
            self.state.loop_guard.record_reverse_write(incident_id)

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def handle_bulk_servicenow_updates(self, changes: list[ServiceNowChange]) -> BulkSyncResult:
        logger.info("Processing bulk ServiceNow sync", extra={"count": len(changes)})
        result = BulkSyncResult(total=len(changes))

        async def _sync_one(change: ServiceNowChange) -> SyncOutcome:
            return await self.handle_servicenow_update(change.sys_id, change.updated_fields, change.old_values)

        perf = self.config.performance
        outcomes, result.batches = await run_in_batches(
            changes,
            _sync_one,
            batch_size=perf.batch_size,
            concurrency=perf.concurrent_requests,
            requests_per_minute=perf.requests_per_minute,
            sleep=self._sleep,
            label="ServiceNow change",
        )
        for change, outcome in zip(changes, outcomes):
            result.record(outcome)
            if isinstance(outcome, Exception):
                message = outcome.message if isinstance(outcome, BridgeError) else str(outcome)
                result.errors.append(BulkSyncError(record_id=change.sys_id, error=message))

        logger.info("Bulk ServiceNow sync completed", extra={"summary": result.model_dump(exclude={"errors"})})
        return result

    async def sync_servicenow_records(
        self,
        query: str | None = None,
        limit: int = 100,
        updated_fields: list[str] | None = None,
    ) -> BulkSyncResult:
        """Re-push linked ServiceNow records matching an encoded ``query`` to incident.io."""
        linked = f"{self.servicenow.incident_io_id_field}ISNOTEMPTY"
        records = await self.servicenow.list_incidents(
            query=f"{linked}^{query}" if query else linked,
            max_records=limit,
        )
        fields = list(updated_fields or RESYNC_FIELDS)
        changes = [ServiceNowChange(sys_id=record.sys_id, updated_fields=fields) for record in records]
        return await self.handle_bulk_servicenow_updates(changes)

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    def clear_processing_locks(self) -> int:
        cleared = len(self.state.reverse_locks)
        self.state.reverse_locks.clear()
        logger.info("Cleared reverse processing locks", extra={"cleared": cleared})
        return cleared

    def health_check(self) -> dict:
        return {
            "status": "healthy",
            "processing": len(self.state.reverse_locks),
            "loop_guard_entries": len(self.state.loop_guard),
            "features": {
                "sync_status": self.config.features.sync_status,
                "sync_severity": self.config.features.sync_severity,
            },
        }
