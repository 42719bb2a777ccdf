"""HMAC-SHA256 webhook signature verification."""

import hashlib
import hmac

from fastapi import Request

from incident_bridge.errors.exceptions import AuthenticationError

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    return SIGNATURE_PREFIX + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Constant-time check of a ``sha256=<hex>`` (or bare hex) signature."""
    if not signature:
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        signature = SIGNATURE_PREFIX + signature
    return hmac.compare_digest(compute_signature(secret, body), signature)


async def read_verified_body(request: Request, header: str, secret: str | None, enabled: bool) -> bytes:
    """Return the raw request body, raising 401 on a bad signature when enabled."""
    body = await request.body()
    if enabled and not verify_signature(secret or "", body, request.headers.get(header)):
        raise AuthenticationError(f"Invalid or missing {header} header")
    return body
