"""Operator endpoints for forcing a sync outside webhook delivery."""

from fastapi import APIRouter

from incident_bridge.dependencies import ForwardEngine, ManualSyncEnabled, ReverseEngine
from incident_bridge.models.results import BulkSyncResult, SyncOutcome
from incident_bridge.models.webhook import (
    BulkSyncRequest,
    ManualIncidentSyncRequest,
    ManualServiceNowSyncRequest,
    ServiceNowBulkSyncRequest,
)

router = APIRouter(prefix="/sync", tags=["Manual sync"], dependencies=[ManualSyncEnabled])


@router.post("/incident/{incident_id}", response_model=SyncOutcome, response_model_exclude_none=True)
async def sync_incident(
    incident_id: str,
    engine: ForwardEngine,
    body: ManualIncidentSyncRequest | None = None,
) -> SyncOutcome:
    action = body.action if body else "update"
    if action == "create":
        return await engine.create_incident(incident_id)
    return await engine.update_incident(incident_id)


@router.post("/servicenow/{sys_id}", response_model=SyncOutcome, response_model_exclude_none=True)
async def sync_servicenow_record(
    sys_id: str,
    engine: ReverseEngine,
    body: ManualServiceNowSyncRequest | None = None,
) -> SyncOutcome:
    body = body or ManualServiceNowSyncRequest()
    return await engine.handle_servicenow_update(sys_id, body.updated_fields, body.old_values)


@router.post("/bulk", response_model=BulkSyncResult)
async def bulk_sync(engine: ForwardEngine, body: BulkSyncRequest | None = None) -> BulkSyncResult:
    body = body or BulkSyncRequest()
    return await engine.sync_all_incidents(limit=body.limit, status=body.status, dry_run=body.dry_run)


@router.post("/bulk/servicenow", response_model=BulkSyncResult)
async def bulk_sync_servicenow(
    engine: ReverseEngine,
    body: ServiceNowBulkSyncRequest | None = None,
) -> BulkSyncResult:
    body = body or ServiceNowBulkSyncRequest()
    return await engine.sync_servicenow_records(
        query=body.query, limit=body.limit, updated_fields=body.updated_fields
    )


@router.get("/stats")
async def sync_stats(engine: ForwardEngine) -> dict:
    return engine.get_sync_stats()


@router.post("/caches/clear")
async def clear_caches(engine: ForwardEngine, reverse: ReverseEngine) -> dict:
    engine.clear_caches()
    cleared = reverse.clear_processing_locks()
    return {"status": "cleared", "reverse_locks_cleared": cleared}
