"""
Billing service orchestrator.

Coordinates:
- Webhook ingress (verify -> ledger claim + interpreter in one transaction)
- Customer management
- Checkout and portal sessions

All Stripe-specific code is in stripe_provider.py; entitlement transitions
live in interpreter.py.
"""
from typing import Any, Mapping, Optional
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from planwarden.core.config import settings
from planwarden.core.database import get_db_session
from planwarden.core.logging import log_event
from planwarden.core.errors import (
    BillingDisabledError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from planwarden.features.audit.service import record_audit_event
from planwarden.features.billing import ledger
from planwarden.features.billing.interpreter import interpret_event
from planwarden.features.billing.provider import BillingProvider, BillingProviderError, ProviderEvent
from planwarden.features.billing.stripe_provider import StripeProvider
from planwarden.features.entitlements.store import EntitlementConflict
from planwarden.features.users.service import get_user, set_stripe_customer_id
from planwarden.models.plan import BillingCycle, PlanTier
from planwarden.models.webhook_event import WebhookOutcome, WebhookResult


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError("Billing not enabled")
    return provider


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive, Starlette headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


def _claim_and_apply(provider: BillingProvider, event: ProviderEvent) -> WebhookOutcome:
    """
    Claim the event id and apply its transition as one transaction.

    A crash before commit leaves neither the claim nor the change, so the
    provider's redelivery runs the handler again. A lost entitlement race
    rolls both back and the whole transaction is retried.
    """
    attempts = max(1, settings.ENTITLEMENT_CAS_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            with get_db_session() as session:
                if not ledger.record_tentative(event.event_id, event.event_type, event.raw or None, session=session):
                    session.rollback()
                    return WebhookOutcome.ALREADY_PROCESSED
                return interpret_event(provider, event, session)
        except (EntitlementConflict, IntegrityError) as e:
            logger.warning(
                f"[webhook] concurrent entitlement write, retrying ({attempt}/{attempts})",
                extra={"event_id": event.event_id, "event_type": event.event_type, "error_code": type(e).__name__},
            )

    raise InfrastructureError(f"Entitlement kept changing under concurrent writes: {event.event_id}")


def process_webhook_event(
    headers: Mapping[str, Any],
    body: bytes,
    provider: Optional[BillingProvider] = None,
) -> WebhookResult:
    """
    Process a billing webhook delivery (idempotent).

    1. Verify signature (nothing is written for a forged request)
    2. Skip if the event id is already in the ledger
    3. Claim the event id and apply the entitlement transition in one
       transaction (a racing duplicate loses on the unique constraint)
    4. On failure, record the event as failed and re-raise

    Returns:
        WebhookResult with the outcome; every outcome is acknowledged

    Raises:
        BillingDisabledError: If Stripe is not configured
        InvalidSignatureError: If the signature or payload is invalid
        InfrastructureError: If the provider or database failed (retryable)
    """
    provider = _require_provider(provider)

    event = provider.verify_signature(
        body,
        _header(headers, SIGNATURE_HEADER),
        settings.STRIPE_WEBHOOK_SECRET,
    )
    log_extra = {"event_id": event.event_id, "event_type": event.event_type}

    def _result(outcome: WebhookOutcome) -> WebhookResult:
        log_event(
            "info",
            f"[webhook] {outcome.value}",
            event_id=event.event_id,
            event_type=event.event_type,
            extra={"outcome": outcome.value},
        )
        return WebhookResult(event_id=event.event_id, event_type=event.event_type, outcome=outcome)

    try:
        if ledger.has_processed(event.event_id):
            return _result(WebhookOutcome.ALREADY_PROCESSED)
    except SQLAlchemyError as e:
        raise InfrastructureError(f"Webhook ledger unavailable: {e}") from e

    try:
        outcome = _claim_and_apply(provider, event)
    except Exception as e:
        logger.error(
            f"[webhook] handler failed: {e}",
            exc_info=True,
            extra={**log_extra, "error_code": getattr(e, "code", type(e).__name__)},
        )
        try:
            ledger.mark_failed(event.event_id, event.event_type, str(e) or type(e).__name__, event.raw or None)
        except SQLAlchemyError:
            logger.error("[webhook] could not record failed event", exc_info=True, extra=log_extra)
        if isinstance(e, SQLAlchemyError):
            raise InfrastructureError(f"Entitlement store unavailable: {e}") from e
        raise

    return _result(outcome)


def ensure_customer_for_user(user_id: str, provider: Optional[BillingProvider] = None) -> str:
    """
    Ensure a billing customer exists for the user.

    Returns:
        Stripe customer ID

    Raises:
        BillingDisabledError: If billing is not configured
        NotFoundError: If the user does not exist
        BillingProviderError: If customer creation fails
    """
    provider = _require_provider(provider)

    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    if user.stripe_customer_id:
        return user.stripe_customer_id

    stripe_customer_id = provider.ensure_customer(user_id, user.email, user.display_name)
    set_stripe_customer_id(user_id, stripe_customer_id)
    logger.info("[billing] customer created", extra={"user_id": user_id})
    return stripe_customer_id


def get_stripe_price_for_plan(plan: PlanTier, cycle: BillingCycle) -> Optional[str]:
    """Map internal plan + billing cycle to a Stripe price ID."""
    price_map = {
        (PlanTier.PLUS, BillingCycle.MONTHLY): settings.STRIPE_PRICE_PLUS_MONTHLY,
        (PlanTier.PLUS, BillingCycle.YEARLY): settings.STRIPE_PRICE_PLUS_YEARLY,
        (PlanTier.PRO, BillingCycle.MONTHLY): settings.STRIPE_PRICE_PRO_MONTHLY,
        (PlanTier.PRO, BillingCycle.YEARLY): settings.STRIPE_PRICE_PRO_YEARLY,
    }
    return price_map.get((plan, cycle))


def start_checkout(
    user_id: str,
    plan: str,
    cycle: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> str:
    """
    Start checkout session for a subscription.

    Args:
        user_id: User ID
        plan: Paid plan (plus, pro)
        cycle: Billing cycle (monthly, yearly)
        success_url: Redirect URL on success
        cancel_url: Redirect URL on cancel

    Returns:
        Checkout URL

    Raises:
        ValidationError: If plan/cycle is invalid or not mapped to a Stripe price
        BillingProviderError: If checkout creation fails
    """
    try:
        tier = PlanTier(plan)
        billing_cycle = BillingCycle(cycle)
    except ValueError:
        raise ValidationError(f"Invalid plan or cycle: {plan} {cycle}")
    if not tier.is_paid:
        raise ValidationError(f"Plan is not purchasable: {plan}")

    provider = _require_provider(provider)

    price_id = get_stripe_price_for_plan(tier, billing_cycle)
    if not price_id:
        raise ValidationError(f"Price not found for {tier.value} {billing_cycle.value}")

    stripe_customer_id = ensure_customer_for_user(user_id, provider)

    base_url = settings.APP_BASE_URL.rstrip("/")
    checkout_url = provider.create_checkout_session(
        customer_id=stripe_customer_id,
        price_id=price_id,
        success_url=success_url or f"{base_url}/account?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{base_url}/pricing?canceled=true",
        metadata={"user_id": user_id, "plan": tier.value},
    )

    record_audit_event(
        action="checkout_session_created",
        user_id=user_id,
        metadata={"plan": tier.value, "cycle": billing_cycle.value},
    )
    return checkout_url


def start_portal(
    user_id: str,
    return_url: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> str:
    """
    Start billing portal session for customer self-service.

    Returns:
        Portal URL

    Raises:
        NotFoundError: If the user does not exist
        ValidationError: If the user has no billing account yet
        BillingProviderError: If portal creation fails
    """
    provider = _require_provider(provider)

    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    if not user.stripe_customer_id:
        raise ValidationError("No billing account found")

    portal_url = provider.create_portal_session(
        customer_id=user.stripe_customer_id,
        return_url=return_url or f"{settings.APP_BASE_URL.rstrip('/')}/account",
    )

    record_audit_event(action="portal_session_created", user_id=user_id)
    return portal_url
