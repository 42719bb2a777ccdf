"""Inbound webhooks from incident.io and ServiceNow."""

import json
import logging

from fastapi import APIRouter, Request

from incident_bridge.api.signatures import read_verified_body
from incident_bridge.dependencies import Config, ForwardEngine, ReverseEngine, TraceId
from incident_bridge.errors.exceptions import BridgeError
from incident_bridge.logging_config import bind_request_context
from incident_bridge.models.webhook import IncidentWebhook, ServiceNowChange

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])


def _parse_json(body: bytes) -> dict:
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise BridgeError("INVALID_PAYLOAD", "Request body is not valid JSON", status_code=400) from exc
    if not isinstance(payload, dict):
        raise BridgeError("INVALID_PAYLOAD", "Request body must be a JSON object", status_code=400)
    return payload


async def handle_incident_webhook(
    request: Request, config: Config, engine: ForwardEngine, trace_id: TraceId
) -> dict:
    """incident.io events. Mounted at ``webhook.path`` by the app factory."""
    body = await read_verified_body(
        request, "X-Incident-Signature", config.webhook.secret, config.webhook.verify_signature
    )
    event = IncidentWebhook.from_payload(_parse_json(body))

    if not event.incident_id:
        logger.warning("Webhook payload has no incident id", extra={"event_type": event.event_type})
        return {"status": "ignored", "message": "No incident id in payload"}
    bind_request_context(trace_id, source="incident.io", record_id=event.incident_id)

    if event.is_creation:
        if not config.features.create_incidents:
            return {"status": "ignored", "message": "Incident creation sync is disabled"}
        outcome = await engine.create_incident(event.incident_id)
    elif event.is_update:
        if not config.features.update_incidents:
            return {"status": "ignored", "message": "Incident update sync is disabled"}
        outcome = await engine.update_incident(event.incident_id)
    else:
        logger.info("Ignoring unhandled webhook event", extra={"event_type": event.event_type})
        return {"status": "ignored", "message": f"Unhandled event type: {event.event_type}"}

    return {"status": "ok", "event_type": event.event_type, **outcome.model_dump(mode="json", exclude_none=True)}


@router.post("/webhook/servicenow")
async def handle_servicenow_webhook(
    request: Request, config: Config, engine: ReverseEngine, trace_id: TraceId
) -> dict:
    """ServiceNow business-rule notifications for the incident table."""
    body = await read_verified_body(
        request,
        "X-ServiceNow-Signature",
        config.servicenow_webhook.secret,
        config.servicenow_webhook.verify_signature,
    )
    try:
        change = ServiceNowChange.model_validate(_parse_json(body))
    except ValueError as exc:
        raise BridgeError("INVALID_PAYLOAD", "Missing record_id in ServiceNow payload", status_code=400) from exc

    if change.operation != "update" or change.table != config.servicenow.table:
        logger.info(
            "Ignoring ServiceNow notification",
            extra={"operation": change.operation, "table": change.table},
        )
        return {"status": "ignored", "message": f"Ignored {change.operation} on {change.table}"}
    bind_request_context(trace_id, source="servicenow", record_id=change.sys_id)

    outcome = await engine.handle_servicenow_update(change.sys_id, change.updated_fields, change.old_values)
    return {"status": "ok", **outcome.model_dump(mode="json", exclude_none=True)}
