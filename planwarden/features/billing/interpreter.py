"""
Event interpreter: maps provider event types to entitlement mutations.

Per-subscription lifecycle:

    NoSubscription -> Active(plan) <-> PastDue(plan)
    Active(plan)   -> Canceled
    PastDue(plan)  -> Canceled

Every transition that sets plan or expiry re-fetches the subscription from
the provider instead of trusting the event payload, so a stale or reordered
delivery still writes the provider's current state ("last re-fetch wins").

Each write carries a precondition on the stored entitlement, checked in the
same transaction as the write:
- a subscription that grants nothing never displaces a different one
- a deletion only applies to the subscription the entitlement holds
- a payment failure only marks the held, not-yet-canceled subscription

A rejected precondition is a processed no-op, kept in the audit trail.

Handlers run inside the webhook's ledger transaction and do every read and
write through its session. Lookup misses (no local user, missing
references) are not errors: the event does not concern a known user and is
acknowledged. Provider and store failures propagate so the transaction
rolls back and the ledger can mark the event failed.
"""
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy.orm import Session

from planwarden.features.audit.service import record_audit_event
from planwarden.features.billing.provider import BillingProvider, ProviderEvent, ProviderSubscription
from planwarden.features.entitlements.store import Precondition, apply_entitlement_change
from planwarden.features.users.service import get_user_by_stripe_customer_id
from planwarden.models.entitlement import Entitlement, EntitlementStatus
from planwarden.models.plan import PlanTier
from planwarden.models.user import User
from planwarden.models.webhook_event import WebhookOutcome


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

Handler = Callable[[BillingProvider, ProviderEvent, Session], WebhookOutcome]


def _ref(value: Any) -> Optional[str]:
    """Stripe references arrive as an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription_ref(invoice: Dict[str, Any]) -> Optional[str]:
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


def _lookup_user(session: Session, event: ProviderEvent, customer_id: Optional[str]) -> Optional[User]:
    user = get_user_by_stripe_customer_id(customer_id, session) if customer_id else None
    if user is None:
        logger.warning(
            f"[webhook] no user found for customer: {customer_id}",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
    return user


def _fetch_owned_subscription(
    provider: BillingProvider,
    event: ProviderEvent,
    subscription_id: str,
    user: User,
) -> Optional[ProviderSubscription]:
    """Re-fetch, refusing a subscription the provider files under another customer."""
    subscription = provider.get_subscription_by_id(subscription_id)
    if subscription.customer_id and subscription.customer_id != user.stripe_customer_id:
        logger.warning(
            f"[webhook] subscription {subscription_id} belongs to customer {subscription.customer_id}",
            extra={"user_id": user.user_id, "event_id": event.event_id, "event_type": event.event_type},
        )
        return None
    return subscription


def _subscription_fields(subscription: ProviderSubscription) -> Dict[str, Any]:
    """Entitlement write derived from live subscription state."""
    status = EntitlementStatus.from_provider(subscription.status)
    if status.grants_access:
        plan, expires_at = subscription.plan, subscription.current_period_end
    else:
        plan, expires_at = PlanTier.FREE, None
    return {
        "plan": plan,
        "plan_expires_at": expires_at,
        "stripe_subscription_id": subscription.subscription_id,
        "status": status,
    }


def _audit_subscription(fields: Dict[str, Any], subscription: ProviderSubscription) -> Dict[str, Any]:
    expires_at = fields["plan_expires_at"]
    return {
        "subscription_id": subscription.subscription_id,
        "plan": PlanTier.coerce(fields["plan"]).value,
        "status": fields["status"].value,
        "provider_status": subscription.status,
        "period_end": expires_at.isoformat() if expires_at else None,
    }


def _holds(current: Optional[Entitlement], subscription_id: str) -> bool:
    return current is not None and current.stripe_subscription_id == subscription_id


def _may_adopt(subscription_id: str, status: EntitlementStatus) -> Precondition:
    def check(current: Optional[Entitlement]) -> bool:
        if current is None or not current.stripe_subscription_id:
            return True
        return _holds(current, subscription_id) or status.grants_access
    return check


def _may_cancel(subscription_id: Optional[str]) -> Precondition:
    def check(current: Optional[Entitlement]) -> bool:
        if current is None or not current.stripe_subscription_id:
            return True
        return _holds(current, subscription_id)
    return check


def _may_mark_past_due(subscription_id: str) -> Precondition:
    def check(current: Optional[Entitlement]) -> bool:
        return _holds(current, subscription_id) and current.status is not EntitlementStatus.CANCELED
    return check


def _skipped(
    session: Session,
    user: User,
    event: ProviderEvent,
    action: str,
    metadata: Dict[str, Any],
) -> WebhookOutcome:
    record_audit_event(
        action=f"{action}_skipped",
        user_id=user.user_id,
        event_id=event.event_id,
        metadata=metadata,
        session=session,
    )
    logger.info(
        f"[webhook] {action} does not apply to the held subscription",
        extra={"user_id": user.user_id, "event_id": event.event_id, "event_type": event.event_type},
    )
    return WebhookOutcome.PROCESSED


def _apply_subscription(
    session: Session,
    user: User,
    event: ProviderEvent,
    subscription: ProviderSubscription,
    audit_action: str,
    extra_audit: Optional[Dict[str, Any]] = None,
) -> WebhookOutcome:
    fields = _subscription_fields(subscription)
    audit_metadata = _audit_subscription(fields, subscription)
    audit_metadata.update(extra_audit or {})
    written = apply_entitlement_change(
        user.user_id,
        fields,
        when=_may_adopt(subscription.subscription_id, fields["status"]),
        audit_action=audit_action,
        audit_metadata=audit_metadata,
        event_id=event.event_id,
        session=session,
    )
    if written is None:
        return _skipped(session, user, event, audit_action, audit_metadata)

    logger.info(
        f"[webhook] {audit_action}: plan={fields['plan'].value} status={fields['status'].value}",
        extra={"user_id": user.user_id, "event_id": event.event_id},
    )
    return WebhookOutcome.PROCESSED


def handle_checkout_completed(provider: BillingProvider, event: ProviderEvent, session: Session) -> WebhookOutcome:
    checkout = event.data
    customer_id = _ref(checkout.get("customer"))
    subscription_id = _ref(checkout.get("subscription"))

    if not customer_id or not subscription_id:
        logger.warning(
            "[webhook] missing customer or subscription id in checkout session",
            extra={"event_id": event.event_id},
        )
        return WebhookOutcome.UNKNOWN_SUBJECT

    user = _lookup_user(session, event, customer_id)
    if user is None:
        return WebhookOutcome.UNKNOWN_SUBJECT

    subscription = _fetch_owned_subscription(provider, event, subscription_id, user)
    if subscription is None:
        return WebhookOutcome.UNKNOWN_SUBJECT
    return _apply_subscription(session, user, event, subscription, "subscription_created")


def handle_subscription_updated(provider: BillingProvider, event: ProviderEvent, session: Session) -> WebhookOutcome:
    payload = event.data
    subscription_id = _ref(payload.get("id"))
    user = _lookup_user(session, event, _ref(payload.get("customer")))
    if user is None or not subscription_id:
        return WebhookOutcome.UNKNOWN_SUBJECT

    subscription = _fetch_owned_subscription(provider, event, subscription_id, user)
    if subscription is None:
        return WebhookOutcome.UNKNOWN_SUBJECT
    return _apply_subscription(session, user, event, subscription, "subscription_updated")


def handle_subscription_deleted(provider: BillingProvider, event: ProviderEvent, session: Session) -> WebhookOutcome:
    payload = event.data
    subscription_id = _ref(payload.get("id"))
    user = _lookup_user(session, event, _ref(payload.get("customer")))
    if user is None:
        return WebhookOutcome.UNKNOWN_SUBJECT

    audit_metadata = {"subscription_id": subscription_id}
    # The deleted id is kept (or recorded, for a first event) for audit
    written = apply_entitlement_change(
        user.user_id,
        {
            "plan": PlanTier.FREE,
            "plan_expires_at": None,
            "stripe_subscription_id": subscription_id,
            "status": EntitlementStatus.CANCELED,
        },
        when=_may_cancel(subscription_id),
        audit_action="subscription_deleted",
        audit_metadata=audit_metadata,
        event_id=event.event_id,
        session=session,
    )
    if written is None:
        return _skipped(session, user, event, "subscription_deleted", audit_metadata)

    logger.info(
        "[webhook] subscription deleted, reverted to free",
        extra={"user_id": user.user_id, "event_id": event.event_id},
    )
    return WebhookOutcome.PROCESSED


def handle_invoice_payment_succeeded(provider: BillingProvider, event: ProviderEvent, session: Session) -> WebhookOutcome:
    invoice = event.data
    subscription_id = _invoice_subscription_ref(invoice)
    if not subscription_id:
        return WebhookOutcome.UNKNOWN_SUBJECT

    user = _lookup_user(session, event, _ref(invoice.get("customer")))
    if user is None:
        return WebhookOutcome.UNKNOWN_SUBJECT

    subscription = _fetch_owned_subscription(provider, event, subscription_id, user)
    if subscription is None:
        return WebhookOutcome.UNKNOWN_SUBJECT
    return _apply_subscription(
        session,
        user,
        event,
        subscription,
        "payment_succeeded",
        extra_audit={"invoice_id": invoice.get("id"), "amount": invoice.get("amount_paid")},
    )


def handle_invoice_payment_failed(provider: BillingProvider, event: ProviderEvent, session: Session) -> WebhookOutcome:
    invoice = event.data
    subscription_id = _invoice_subscription_ref(invoice)
    if not subscription_id:
        return WebhookOutcome.UNKNOWN_SUBJECT

    user = _lookup_user(session, event, _ref(invoice.get("customer")))
    if user is None:
        return WebhookOutcome.UNKNOWN_SUBJECT

    audit_metadata = {
        "subscription_id": subscription_id,
        "invoice_id": invoice.get("id"),
        "attempt_count": invoice.get("attempt_count"),
    }
    # Plan and expiry stay as they are; the grant runs until plan_expires_at
    written = apply_entitlement_change(
        user.user_id,
        {"status": EntitlementStatus.PAST_DUE},
        when=_may_mark_past_due(subscription_id),
        audit_action="payment_failed",
        audit_metadata=audit_metadata,
        event_id=event.event_id,
        session=session,
    )
    if written is None:
        return _skipped(session, user, event, "payment_failed", audit_metadata)

    logger.info(
        f"[webhook] payment failed: attempt={invoice.get('attempt_count')}",
        extra={"user_id": user.user_id, "event_id": event.event_id},
    )
    return WebhookOutcome.PROCESSED


TRANSITIONS: Dict[str, Handler] = {
    CHECKOUT_COMPLETED: handle_checkout_completed,
    SUBSCRIPTION_CREATED: handle_subscription_updated,
    SUBSCRIPTION_UPDATED: handle_subscription_updated,
    SUBSCRIPTION_DELETED: handle_subscription_deleted,
    INVOICE_PAYMENT_SUCCEEDED: handle_invoice_payment_succeeded,
    INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
}


def interpret_event(provider: BillingProvider, event: ProviderEvent, session: Session) -> WebhookOutcome:
    """Apply the transition for `event.event_type` within `session`; unknown types are a no-op."""
    handler = TRANSITIONS.get(event.event_type)
    if handler is None:
        logger.info(
            f"[webhook] unhandled event type: {event.event_type}",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        return WebhookOutcome.IGNORED
    return handler(provider, event, session)
