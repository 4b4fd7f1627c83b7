"""
planwarden/models/plan.py

Plan tiers.

A plan is a closed set of capability tiers. Provider metadata is mapped onto
it through `PlanTier.from_metadata`, which never fails: anything that is not
a known paid tier is treated as `free`.
"""

from enum import Enum
from typing import Any, Optional


class PlanTier(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"

    @property
    def is_paid(self) -> bool:
        return self is not PlanTier.FREE

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def from_metadata(cls, value: Optional[Any]) -> "PlanTier":
        """Map a provider metadata value to a tier (unmapped -> FREE)."""
        if value is None:
            return cls.FREE
        normalized = str(value).strip().lower()
        for tier in (cls.PLUS, cls.PRO):
            if normalized == tier.value:
                return tier
        return cls.FREE

    @classmethod
    def coerce(cls, value: Any) -> "PlanTier":
        """Read a stored value back into a tier."""
        if isinstance(value, cls):
            return value
        return cls.from_metadata(value)


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
