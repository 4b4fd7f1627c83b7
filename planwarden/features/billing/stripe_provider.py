"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification, envelope decoding and
subscription re-fetch.
"""
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import logging

import stripe

from planwarden.core.config import settings
from planwarden.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    ProviderEvent,
    ProviderSubscription,
)
from planwarden.models.plan import PlanTier


logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain-dict view of a StripeObject (or pass a dict through)."""
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


def _timestamp_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_subscription(data: Dict[str, Any]) -> ProviderSubscription:
    """Normalize a Stripe subscription object (expanded product) into ProviderSubscription."""
    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}

    product = (first_item.get("price") or {}).get("product")
    product_metadata = product.get("metadata", {}) if isinstance(product, dict) else {}
    plan = PlanTier.from_metadata(product_metadata.get("plan")) if first_item else PlanTier.FREE

    # Newer API versions carry the period on the subscription item
    period_end = data.get("current_period_end") or first_item.get("current_period_end")

    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return ProviderSubscription(
        subscription_id=data["id"],
        status=data.get("status") or "",
        current_period_end=_timestamp_to_datetime(period_end),
        plan=plan,
        customer_id=customer,
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, tolerance: Optional[int] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            tolerance: Signature timestamp tolerance in seconds
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def verify_signature(self, body: bytes, signature_header: Optional[str], secret: Optional[str]) -> ProviderEvent:
        """Verify Stripe-Signature header and decode the event envelope."""
        if not secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            envelope = json.loads(payload)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        if not isinstance(envelope, dict) or not envelope.get("id") or not envelope.get("type"):
            raise BillingWebhookError("Invalid payload: missing event id or type")

        return ProviderEvent(
            event_id=envelope["id"],
            event_type=envelope["type"],
            data=(envelope.get("data") or {}).get("object") or {},
            raw=envelope,
        )

    def get_subscription_by_id(self, subscription_id: str) -> ProviderSubscription:
        """Re-fetch the live subscription with its product expanded."""
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id,
                expand=["items.data.price.product"],
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription fetch failed: {e}")
        return parse_subscription(_as_dict(subscription))

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create a Stripe customer tagged with the internal user id."""
        customer_data: Dict[str, Any] = {
            "metadata": {"user_id": user_id}
        }
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name

        try:
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe subscription checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                subscription_data={"metadata": metadata or {}},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
