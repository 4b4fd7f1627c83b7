"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
Read access to the webhook ledger (failed rows are the manual
reconciliation queue), entitlement inspection and projection resync.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from planwarden.core.admin_auth import require_admin, AdminActor
from planwarden.core.errors import NotFoundError
from planwarden.features.audit.service import list_audit_events, record_audit_event
from planwarden.features.billing.ledger import get_event, list_events
from planwarden.features.entitlements.store import get_entitlement, sync_entitlement_to_user
from planwarden.models.entitlement import Entitlement
from planwarden.models.webhook_event import WebhookEventRecord, WebhookEventStatus

logger = logging.getLogger("planwarden.admin_billing")

router = APIRouter()


class WebhookEventListItem(BaseModel):
    event_id: str
    event_type: str
    status: WebhookEventStatus
    processed_at: datetime
    error_message: Optional[str] = None


class WebhookEventListResponse(BaseModel):
    total: int
    events: List[WebhookEventListItem]


class ProjectionSyncResponse(BaseModel):
    success: bool
    user_id: str
    message: str


@router.get("/api/admin/billing/webhook-events", response_model=WebhookEventListResponse)
def list_webhook_events(
    status: Optional[WebhookEventStatus] = Query(None, description="Filter by status (success/failed)"),
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    """
    List webhook ledger rows, newest first.
    `?status=failed` is the manual reconciliation queue.
    """
    logger.info(f"[admin] listing webhook events by {actor.actor_id}: status={status}, limit={limit}")
    records = list_events(status=status, limit=limit)
    return WebhookEventListResponse(
        total=len(records),
        events=[
            WebhookEventListItem(
                event_id=r.event_id,
                event_type=r.event_type,
                status=r.status,
                processed_at=r.processed_at,
                error_message=r.error_message,
            )
            for r in records
        ],
    )


@router.get("/api/admin/billing/webhook-events/{event_id}", response_model=WebhookEventRecord)
def get_webhook_event(event_id: str, actor: AdminActor = Depends(require_admin)):
    """Full ledger row, including the payload snapshot."""
    record = get_event(event_id)
    if record is None:
        raise NotFoundError(f"Webhook event not found: {event_id}")
    return record


@router.get("/api/admin/billing/entitlements/{user_id}", response_model=Entitlement)
def get_user_entitlement(user_id: str, actor: AdminActor = Depends(require_admin)):
    entitlement = get_entitlement(user_id)
    if entitlement is None:
        raise NotFoundError(f"No entitlement for user: {user_id}")
    return entitlement


@router.get("/api/admin/billing/audit")
def list_billing_audit(
    user_id: Optional[str] = Query(None),
    event_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    actor: AdminActor = Depends(require_admin),
) -> List[Dict[str, Any]]:
    return list_audit_events(user_id=user_id, event_id=event_id, limit=limit)


@router.post("/api/admin/billing/entitlements/{user_id}/sync", response_model=ProjectionSyncResponse)
def resync_user_projection(user_id: str, actor: AdminActor = Depends(require_admin)):
    """
    Rewrite app_users.{plan, plan_expires_at} from the entitlement row.
    Repairs a projection edited out-of-band; entitlement state is not touched.
    """
    synced = sync_entitlement_to_user(user_id)
    if not synced:
        raise NotFoundError(f"No entitlement or user to sync: {user_id}")

    record_audit_event(
        action="admin_projection_sync",
        user_id=user_id,
        metadata={"actor_id": actor.actor_id},
    )
    logger.info(f"[admin] projection synced by {actor.actor_id}", extra={"user_id": user_id})
    return ProjectionSyncResponse(success=True, user_id=user_id, message="Projection synced")
