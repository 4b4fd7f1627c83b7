"""
planwarden/features/entitlements/service.py

Plan status + quota enforcement for the rest of the application.

Handles:
- Plan status (effective plan, quota, capabilities) for a user
- Hard enforcement before a quota-counted record is created
- Feature checks against the effective plan

Reads only the `app_users` projection and the usage count. Nothing here is
cached: expiry is evaluated against the clock on every call.
"""

from datetime import datetime
from typing import Any, Optional
import logging

from planwarden.core.config import settings
from planwarden.core.errors import LimitReachedError, NotFoundError, ValidationError
from planwarden.features.entitlements.policy import calculate_plan_status, feature_gate
from planwarden.features.usage.service import ATTENDANCE, get_usage_count
from planwarden.features.users.service import get_user
from planwarden.models.plan_status import PlanStatus


logger = logging.getLogger(__name__)

QUOTA_COUNTED_KINDS = frozenset({ATTENDANCE})


def get_plan_status(user_id: str, *, now: Optional[datetime] = None) -> PlanStatus:
    """
    Current plan status for a user.

    Raises:
        NotFoundError: If the user does not exist
    """
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")

    usage_count = get_usage_count(user_id, ATTENDANCE)
    return calculate_plan_status(
        user.plan,
        user.plan_expires_at,
        usage_count,
        now=now,
        free_limit=settings.FREE_PLAN_LIMIT,
    )


def require_capacity(
    user_id: str,
    resource_kind: str = ATTENDANCE,
    *,
    now: Optional[datetime] = None,
) -> PlanStatus:
    """
    Gate creation of one more quota-counted record.

    Returns:
        The PlanStatus the decision was made on

    Raises:
        LimitReachedError: If the effective plan has no capacity left
        NotFoundError: If the user does not exist
        ValidationError: If `resource_kind` is not counted against the quota
    """
    if resource_kind not in QUOTA_COUNTED_KINDS:
        raise ValidationError(f"Not a quota-counted resource: {resource_kind}")

    status = get_plan_status(user_id, now=now)
    if status.can_create:
        return status

    logger.info(
        "[entitlements] limit reached",
        extra={
            "user_id": user_id,
            "plan": status.effective_plan.value,
            "resource_kind": resource_kind,
            "current_count": status.attendance_count,
        },
    )
    raise LimitReachedError(
        f"{status.effective_plan.display_name} plan limit of {status.limit} reached",
        current_count=status.attendance_count,
        limit=status.limit,
        resource_kind=resource_kind,
    )


def has_feature(user_id: str, feature: Any, *, now: Optional[datetime] = None) -> bool:
    """Feature gate on the user's effective plan (expired grants count as free)."""
    status = get_plan_status(user_id, now=now)
    return feature_gate(status.effective_plan, feature)
