"""
Billing provider protocol.

Defines the interface the webhook pipeline and checkout flows need from a
billing provider (Stripe). Business logic depends only on this module.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from planwarden.core.errors import InfrastructureError, InvalidSignatureError
from planwarden.models.plan import PlanTier


@dataclass(frozen=True)
class ProviderEvent:
    """Decoded webhook envelope."""
    event_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderSubscription:
    """Authoritative subscription state, re-fetched by id."""
    subscription_id: str
    status: str  # provider status: active, trialing, past_due, canceled, unpaid, ...
    current_period_end: Optional[datetime]
    plan: PlanTier
    customer_id: Optional[str] = None


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification and envelope decoding
    - Subscription re-fetch by id
    - Customer, checkout and portal session creation
    """

    def verify_signature(self, body: bytes, signature_header: Optional[str], secret: Optional[str]) -> ProviderEvent:
        """
        Verify the payload against the shared secret and decode it.

        Raises:
            InvalidSignatureError: If the signature, secret or payload is invalid
        """
        ...

    def get_subscription_by_id(self, subscription_id: str) -> ProviderSubscription:
        """
        Fetch live subscription state.

        Raises:
            BillingProviderError: If the provider cannot be reached
        """
        ...

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        ...


class BillingProviderError(InfrastructureError):
    """Provider API unreachable or returned an error. Retryable."""
    code = "billing_provider_error"


class BillingWebhookError(InvalidSignatureError):
    """Webhook could not be authenticated or decoded."""
