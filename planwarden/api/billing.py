"""
Billing API routes.

Minimal surface:
- GET  /api/billing/plan-status: Effective plan, quota and capabilities
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from planwarden.core.auth import get_current_user_id
from planwarden.core.errors import (
    BillingDisabledError,
    InfrastructureError,
    InvalidSignatureError,
)
from planwarden.features.billing.service import (
    process_webhook_event,
    start_checkout,
    start_portal,
)
from planwarden.features.entitlements.service import get_plan_status
from planwarden.models.plan_status import PlanStatus


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan: str
    cycle: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    """Request to create portal session."""
    return_url: Optional[str] = None


class SessionUrlResponse(BaseModel):
    """Response with a hosted Stripe page URL."""
    url: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str


@router.get("/plan-status", response_model=PlanStatus)
async def plan_status(user_id: str = Depends(get_current_user_id)):
    """
    Current plan status for the calling user.

    Evaluated against the clock on every request; a lapsed paid plan is
    reported as free here before any webhook arrives.
    """
    return get_plan_status(user_id)


@router.post("/checkout", response_model=SessionUrlResponse)
async def create_checkout(request: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe checkout session.

    Returns:
        {"url": "https://checkout.stripe.com/..."}

    Errors:
        400: Invalid plan/cycle, or no price configured
        503: Billing disabled, or Stripe API error
    """
    url = start_checkout(
        user_id=user_id,
        plan=request.plan,
        cycle=request.cycle,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return {"url": url}


@router.post("/portal", response_model=SessionUrlResponse)
async def create_portal(request: PortalRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe billing portal session.

    Errors:
        400: User never checked out (no billing account)
        503: Billing disabled, or Stripe API error
    """
    url = start_portal(user_id=user_id, return_url=request.return_url)
    return {"url": url}


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates entitlement
    state. The 200 is only sent after the ledger and entitlement writes commit.

    Returns:
        {"received": true, "event_id": ..., "outcome": ...} for every
        processed, duplicate, ignored or unknown-subject delivery

    Errors:
        400: Invalid signature or payload (not retried by Stripe usefully)
        503: Billing disabled, or a transient failure (Stripe retries)
    """
    # Raw body is required for signature verification
    body = await request.body()

    try:
        result = process_webhook_event(request.headers, body)
    except (InvalidSignatureError, BillingDisabledError, InfrastructureError):
        raise
    except Exception as e:
        raise InfrastructureError(f"Webhook processing failed: {e}") from e

    return {"received": True, "event_id": result.event_id, "outcome": result.outcome.value}
