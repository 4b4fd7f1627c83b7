"""
Admin authentication for billing operations.

Shared-secret scheme: the X-Admin-Key header must match ADMIN_KEY. Admin
actions are logged with a hashed actor identity, never the key itself.
"""
import hashlib
import hmac
from typing import Optional, Literal
from dataclasses import dataclass
from fastapi import Request, HTTPException
from planwarden.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["legacy_key"]
    actor_id: str  # "legacy:<hash>"
    actor_display: Optional[str] = None
    auth_mechanism: Literal["x_admin_key"] = "x_admin_key"


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    """
    Verify X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_type="legacy_key",
        actor_id=f"legacy:{key_hash}",
        actor_display="Admin Key",
    )


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    if not settings.ADMIN_KEY:
        raise HTTPException(
            status_code=503,
            detail="Admin authentication not configured; set ADMIN_KEY",
        )

    actor = verify_legacy_key(request)
    if not actor:
        raise HTTPException(
            status_code=401,
            detail="Unauthorized: invalid or missing X-Admin-Key header",
        )
    return actor
