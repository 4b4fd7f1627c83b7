"""
Auth utilities for the planwarden API.

Resolves the calling user from request context. An upstream auth layer sets
`request.state.user_id`; the X-User-Id header is accepted for service-to-service
calls and tests.
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
import logging

logger = logging.getLogger(__name__)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Calling user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. request.state.user_id (set by upstream auth middleware)
    2. X-User-Id header
    3. Raise 401 Unauthorized

    After successful auth, ensure the user row exists (plan defaults to free).

    Raises:
        HTTPException 401: Missing authentication
    """
    user_id = getattr(request.state, "user_id", None) or (x_user_id or "").strip()

    if user_id:
        from planwarden.features.users.service import get_or_create_user
        get_or_create_user(user_id)
        return user_id

    raise HTTPException(
        status_code=401,
        detail="Missing authenticated user or X-User-Id header",
    )
