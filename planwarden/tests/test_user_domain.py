"""
User records and usage accounting, the two collaborators the plan
policy reads from.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from planwarden.core.database import get_db_session, usage_events
from planwarden.features.usage.service import (
    emit_usage_event,
    get_usage_count,
    remove_usage_event,
)
from planwarden.features.users.service import (
    get_or_create_user,
    get_user,
    get_user_by_stripe_customer_id,
    set_stripe_customer_id,
)
from planwarden.models.plan import PlanTier


NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_get_or_create_is_idempotent():
    first = get_or_create_user("user_1", email="one@example.com", display_name="  One  ")
    second = get_or_create_user("user_1", email="other@example.com")

    assert first.display_name == "One"
    assert second.email == "one@example.com"
    assert second.plan is PlanTier.FREE
    assert second.plan_expires_at is None


def test_display_name_fallback_is_deterministic():
    a = get_or_create_user("user_anon")
    assert a.display_name.startswith("@u_")
    assert get_user("user_anon").display_name == a.display_name


def test_customer_lookup():
    get_or_create_user("user_2")
    assert get_user_by_stripe_customer_id("cus_2") is None

    set_stripe_customer_id("user_2", "cus_2")

    assert get_user_by_stripe_customer_id("cus_2").user_id == "user_2"
    assert get_user("user_2").stripe_customer_id == "cus_2"


def test_unknown_user():
    assert get_user("nobody") is None


def test_usage_counts_are_per_user_and_key():
    emit_usage_event("user_3")
    emit_usage_event("user_3")
    emit_usage_event("user_3", usage_key="export")
    emit_usage_event("user_4")

    assert get_usage_count("user_3") == 2
    assert get_usage_count("user_3", "export") == 1
    assert get_usage_count("user_4") == 1


def test_remove_usage_event():
    assert remove_usage_event("user_6") is False

    emit_usage_event("user_6", occurred_at=NOW - timedelta(days=1), metadata={"record_id": "a"})
    emit_usage_event("user_6", occurred_at=NOW, metadata={"record_id": "b"})

    assert remove_usage_event("user_6") is True
    assert get_usage_count("user_6") == 1
    with get_db_session() as session:
        remaining = session.execute(
            select(usage_events.c["metadata"]).where(usage_events.c.user_id == "user_6")
        ).scalars().all()
    assert remaining == [{"record_id": "a"}]
