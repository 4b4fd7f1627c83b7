"""
planwarden/models/entitlement.py

Entitlement: the canonical record of what a user is currently granted,
derived from billing-provider state.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from planwarden.models.plan import PlanTier


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"

    @classmethod
    def from_provider(cls, provider_status: Optional[str]) -> "EntitlementStatus":
        """Map a Stripe subscription status onto the local status set."""
        mapping = {
            "active": cls.ACTIVE,
            "trialing": cls.TRIALING,
            "past_due": cls.PAST_DUE,
            "canceled": cls.CANCELED,
            "unpaid": cls.CANCELED,
        }
        # incomplete, incomplete_expired, paused and anything new
        return mapping.get(provider_status or "", cls.INACTIVE)

    @property
    def grants_access(self) -> bool:
        return self in (EntitlementStatus.ACTIVE, EntitlementStatus.TRIALING)


class Entitlement(BaseModel):
    """
    One row per user, unique on user_id.

    Cancellation keeps `stripe_subscription_id` so the last known
    subscription stays visible for audit.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: PlanTier = PlanTier.FREE
    plan_expires_at: Optional[datetime] = None
    stripe_subscription_id: Optional[str] = None
    status: EntitlementStatus = EntitlementStatus.ACTIVE
    updated_at: datetime
