"""Health check endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from incident_bridge.dependencies import Config, ForwardEngine, ReverseEngine

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(config: Config) -> dict:
    """Liveness plus the non-secret shape of the running configuration."""
    return {
        "status": "healthy",
        "service": "incident-bridge",
        "version": "1.0.0",
        "servicenow_instance": config.servicenow.instance_url,
        "incident_io_api": config.incident_io.api_url,
        "features": config.features.model_dump(),
    }


@router.get("/health/ready")
async def readiness(forward: ForwardEngine, reverse: ReverseEngine):
    """Check both platform connections and the mapping configuration."""
    result = await forward.health_check()
    result["reverse_sync"] = reverse.health_check()
    ready = result["status"] == "healthy"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={**result, "status": "ready" if ready else "not_ready"},
    )
