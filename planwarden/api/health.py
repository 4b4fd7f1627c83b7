"""
Health endpoints for planwarden.

Liveness has no dependencies; readiness probes the database and the tables
the webhook pipeline writes to. No secrets or stack traces are returned.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from planwarden.core.database import check_connection, get_engine

logger = logging.getLogger("planwarden")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "app_users",
    "entitlements",
    "webhook_events",
    "audit_events",
    "usage_events",
)


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        if not check_connection():
            return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except SQLAlchemyError as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
