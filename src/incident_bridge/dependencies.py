"""FastAPI dependency injection providers."""

from typing import Annotated

from fastapi import Depends, Request

from incident_bridge.errors.exceptions import FeatureDisabledError
from incident_bridge.sync.config import BridgeConfig
from incident_bridge.sync.forward import ForwardSyncEngine
from incident_bridge.sync.reverse import ReverseSyncEngine


def get_bridge_config(request: Request) -> BridgeConfig:
    return request.app.state.bridge_config


def get_forward_engine(request: Request) -> ForwardSyncEngine:
    return request.app.state.forward_engine


def get_reverse_engine(request: Request) -> ReverseSyncEngine:
    return request.app.state.reverse_engine


def get_trace_id(request: Request) -> str:
    """Extract trace_id from request state (set by middleware)."""
    return getattr(request.state, "trace_id", "unknown")


def require_manual_sync(request: Request) -> None:
    """Gate operator endpoints behind ``features.enable_manual_sync_endpoints``."""
    if not request.app.state.bridge_config.features.enable_manual_sync_endpoints:
        raise FeatureDisabledError("enable_manual_sync_endpoints")


# Type aliases for dependency injection
Config = Annotated[BridgeConfig, Depends(get_bridge_config)]
ForwardEngine = Annotated[ForwardSyncEngine, Depends(get_forward_engine)]
ReverseEngine = Annotated[ReverseSyncEngine, Depends(get_reverse_engine)]
TraceId = Annotated[str, Depends(get_trace_id)]
ManualSyncEnabled = Depends(require_manual_sync)
