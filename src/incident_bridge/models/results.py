"""Outcome models returned by the sync engines."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from incident_bridge.models.enums import SyncAction


class SyncOutcome(BaseModel):
    """Result of one single-record sync."""

    model_config = ConfigDict(extra="forbid")

    action: SyncAction
    incident_id: str | None = None
    servicenow_sys_id: str | None = None
    servicenow_number: str | None = None
    updated_fields: list[str] = Field(default_factory=list)
    message: str | None = None


class BulkSyncError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: str
    error: str


class BulkSyncResult(BaseModel):
    """Summary of a bulk sync. Per-record failures never abort the run."""

    model_config = ConfigDict(extra="forbid")

    total: int = 0
    successful: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0
    dry_run: bool = False
    errors: list[BulkSyncError] = Field(default_factory=list)

    def record(self, outcome: Any) -> None:
        """Count one per-record outcome (a ``SyncOutcome`` or an exception)."""
        if isinstance(outcome, BaseException):
            self.failed += 1
            return
        if outcome.action == SyncAction.CREATED:
            self.created += 1
            self.successful += 1
        elif outcome.action == SyncAction.UPDATED:
            self.updated += 1
            self.successful += 1
        elif outcome.action == SyncAction.NOOP:
            self.successful += 1
        else:
            self.skipped += 1
