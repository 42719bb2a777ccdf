"""FastAPI application factory and lifespan management."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from incident_bridge.config import Settings, settings as default_settings
from incident_bridge.logging_config import configure_logging
from incident_bridge.sync.config import BridgeConfig, load_bridge_config

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the platform clients on shutdown."""
    logger.info(
        "incident-bridge started",
        extra={"summary": app.state.bridge_config.summary()},
    )
    yield
    for client in (app.state.servicenow, app.state.incident_io):
        aclose = getattr(client, "aclose", None)
        if aclose is not None:
            await aclose()
    logger.info("incident-bridge shutdown complete")


def create_app(
    settings: Settings | None = None,
    bridge_config: BridgeConfig | None = None,
    *,
    servicenow=None,
    incident_io=None,
    state=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Platform clients and sync state may be injected (tests pass fakes);
    otherwise they are built from the loaded configuration.
    """
    from incident_bridge.clients.incident_io import IncidentIOClient
    from incident_bridge.clients.servicenow import ServiceNowClient
    from incident_bridge.mapping.mapper import FieldMapper
    from incident_bridge.sync.forward import ForwardSyncEngine
    from incident_bridge.sync.reverse import ReverseSyncEngine
    from incident_bridge.sync.state import SyncState

    settings = settings or default_settings
    configure_logging(log_level=settings.log_level, json_output=settings.json_logs)
    config = bridge_config or load_bridge_config(settings.config_dir)

    app = FastAPI(
        title="incident-bridge",
        version="1.0.0",
        description="Bidirectional incident sync between incident.io and ServiceNow.",
        lifespan=lifespan,
    )

    servicenow = servicenow or ServiceNowClient.from_config(config.servicenow)
    incident_io = incident_io or IncidentIOClient.from_config(config.incident_io)
    state = state or SyncState.from_config(config.loop_guard)
    mapper = FieldMapper(config.field_mappings)

    app.state.settings = settings
    app.state.bridge_config = config
    app.state.servicenow = servicenow
    app.state.incident_io = incident_io
    app.state.sync_state = state
    app.state.forward_engine = ForwardSyncEngine(servicenow, incident_io, mapper, config, state)
    app.state.reverse_engine = ReverseSyncEngine(servicenow, incident_io, config, state)

    # Add middleware (order matters: last added = first executed)
    from incident_bridge.api.middleware.rate_limit import setup_rate_limiter
    setup_rate_limiter(app, settings.rate_limit_enabled, settings.rate_limit_per_minute)

    from incident_bridge.api.middleware.trace_id import TraceIdMiddleware
    app.add_middleware(TraceIdMiddleware)

    # Register error handlers
    from incident_bridge.errors.handlers import register_exception_handlers
    register_exception_handlers(app)

    # Import and mount routers
    from incident_bridge.api.router import api_router
    from incident_bridge.api.routes.webhooks import handle_incident_webhook
    app.include_router(api_router)
    app.add_api_route(
        config.webhook.path,
        handle_incident_webhook,
        methods=["POST"],
        tags=["Webhooks"],
    )

    return app
