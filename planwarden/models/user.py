from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from planwarden.models.plan import PlanTier


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    display_name: Optional[str] = None
    email: Optional[str] = None
    status: str = "active"
    stripe_customer_id: Optional[str] = None
    # Denormalized from entitlements
    plan: PlanTier = PlanTier.FREE
    plan_expires_at: Optional[datetime] = None

    @staticmethod
    def normalized_display_name(user_id: str, display_name: Optional[str] = None) -> str:
        if display_name and display_name.strip():
            return display_name.strip()
        # Deterministic fallback handle
        import hashlib
        h = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
        return f"@u_{h[-6:]}"
