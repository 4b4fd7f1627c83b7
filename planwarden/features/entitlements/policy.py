"""
planwarden/features/entitlements/policy.py

Plan policy engine.

Pure functions only: no database, no provider, no clock reads unless the
caller omits `now`. Evaluated on every gated action and never cached, since
elapsed time alone changes the answer (a lapsed subscription downgrades
here without any webhook).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from planwarden.models.plan import PlanTier
from planwarden.models.plan_status import Capabilities, PlanStatus


FREE_PLAN_LIMIT = 7


class Feature(str, Enum):
    SAVINGS = "savings"
    EXPORT = "export"
    MULTI_SEASON = "multi_season"
    ADVANCED_STATS = "advanced_stats"
    CUSTOM_CATEGORIES = "custom_categories"
    PRIORITY_SUPPORT = "priority_support"
    NO_ADS = "no_ads"
    PAST_SELF = "past_self"


_PAID = frozenset({PlanTier.PLUS, PlanTier.PRO})
_ALL = frozenset(PlanTier)

FEATURE_ACCESS: Dict[Feature, FrozenSet[PlanTier]] = {
    Feature.SAVINGS: _ALL,
    Feature.EXPORT: _PAID,
    Feature.MULTI_SEASON: _PAID,
    Feature.NO_ADS: _PAID,
    Feature.PAST_SELF: _PAID,
    Feature.ADVANCED_STATS: frozenset({PlanTier.PRO}),
    Feature.CUSTOM_CATEGORIES: frozenset({PlanTier.PRO}),
    Feature.PRIORITY_SUPPORT: frozenset({PlanTier.PRO}),
}


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return _as_utc(now)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def effective_plan(
    stored_plan: Any,
    plan_expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> PlanTier:
    """Return the plan honored right now.

    A paid plan without an expiry never lapses; with one, it holds strictly
    before the expiry instant and becomes free at or after it.
    """
    plan = PlanTier.coerce(stored_plan)
    if plan is PlanTier.FREE:
        return plan
    if plan_expires_at is None:
        return plan
    if _as_utc(plan_expires_at) > _normalize_now(now):
        return plan
    return PlanTier.FREE


def quota(plan: Any, free_limit: int = FREE_PLAN_LIMIT) -> Optional[int]:
    """Record ceiling for an effective plan. None means unlimited."""
    if PlanTier.coerce(plan) is PlanTier.FREE:
        return free_limit
    return None


def can_create(plan: Any, current_usage_count: int, free_limit: int = FREE_PLAN_LIMIT) -> bool:
    limit = quota(plan, free_limit)
    if limit is None:
        return True
    return current_usage_count < limit


def remaining(plan: Any, current_usage_count: int, free_limit: int = FREE_PLAN_LIMIT) -> Optional[int]:
    limit = quota(plan, free_limit)
    if limit is None:
        return None
    return max(0, limit - current_usage_count)


def feature_gate(plan: Any, feature: Any) -> bool:
    """Check the static capability table. Unknown features raise ValueError."""
    return PlanTier.coerce(plan) in FEATURE_ACCESS[Feature(feature)]


def compute_capabilities(plan: Any) -> Capabilities:
    tier = PlanTier.coerce(plan)
    return Capabilities(
        can_export=feature_gate(tier, Feature.EXPORT),
        can_multi_season=feature_gate(tier, Feature.MULTI_SEASON),
        can_advanced_stats=feature_gate(tier, Feature.ADVANCED_STATS),
        can_custom_categories=feature_gate(tier, Feature.CUSTOM_CATEGORIES),
        can_priority_support=feature_gate(tier, Feature.PRIORITY_SUPPORT),
        can_past_self=feature_gate(tier, Feature.PAST_SELF),
        show_ads=not feature_gate(tier, Feature.NO_ADS),
    )


def calculate_plan_status(
    stored_plan: Any,
    plan_expires_at: Optional[datetime],
    usage_count: int,
    now: Optional[datetime] = None,
    free_limit: int = FREE_PLAN_LIMIT,
) -> PlanStatus:
    """Everything a gated call site needs, derived from one effective plan."""
    plan = PlanTier.coerce(stored_plan)
    effective = effective_plan(plan, plan_expires_at, now)
    return PlanStatus(
        plan=plan,
        plan_expires_at=plan_expires_at,
        effective_plan=effective,
        is_pro=effective is PlanTier.PRO,
        is_plus=effective is PlanTier.PLUS,
        attendance_count=usage_count,
        limit=quota(effective, free_limit),
        remaining=remaining(effective, usage_count, free_limit),
        can_create=can_create(effective, usage_count, free_limit),
        entitlements=compute_capabilities(effective),
    )
