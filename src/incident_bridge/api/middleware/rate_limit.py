"""Rate limiting middleware using slowapi."""

import logging

from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from incident_bridge.errors.handlers import error_response

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply one per-client limit to every request, routed or not."""

    def __init__(self, app, limiter: Limiter, limit: str):
        super().__init__(app)
        self.limiter = limiter
        self.item = parse(limit)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        key = get_remote_address(request)
        if not self.limiter.limiter.hit(self.item, key):
            logger.warning("Rate limit exceeded", extra={"client": key, "path": request.url.path})
            return error_response(
                request, 429, "RATE_LIMITED", f"Rate limit exceeded: {self.item}", {"client": key}
            )
        return await call_next(request)


def setup_rate_limiter(app, enabled: bool, per_minute: int) -> None:
    """Attach an in-memory limiter applying ``per_minute`` per client address."""
    if not enabled:
        return

    limit = f"{per_minute}/minute"
    limiter = Limiter(key_func=get_remote_address, default_limits=[limit], storage_uri="memory://")
    app.state.limiter = limiter
    app.add_middleware(RateLimitMiddleware, limiter=limiter, limit=limit)
    logger.info("Rate limiter configured (%d/min per client)", per_minute)
