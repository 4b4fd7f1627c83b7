"""
planwarden/models/plan_status.py

Read model returned to the rest of the application for gated actions.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from planwarden.models.plan import PlanTier


class Capabilities(BaseModel):
    """Feature gates for an effective plan. One table, keyed by tier."""
    model_config = ConfigDict(frozen=True)

    can_export: bool
    can_multi_season: bool
    can_advanced_stats: bool
    can_custom_categories: bool
    can_priority_support: bool
    can_past_self: bool
    show_ads: bool


class PlanStatus(BaseModel):
    """
    `limit` and `remaining` are None when the plan is unlimited.
    """
    model_config = ConfigDict(frozen=True)

    plan: PlanTier
    plan_expires_at: Optional[datetime] = None
    effective_plan: PlanTier
    is_pro: bool
    is_plus: bool
    attendance_count: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    can_create: bool
    entitlements: Capabilities
