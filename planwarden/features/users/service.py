"""
User domain service.
- get_or_create_user(user_id)
- get_user(user_id)
- get_user_by_stripe_customer_id(customer_id)
- set_stripe_customer_id(user_id, customer_id)
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from planwarden.core.database import get_db_session, users as app_users
from planwarden.models.plan import PlanTier
from planwarden.models.user import User


def normalize_display_name(user_id: str, display_name: Optional[str]) -> str:
    return User.normalized_display_name(user_id, display_name)


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=row.created_at,
        display_name=row.display_name or normalize_display_name(row.user_id, None),
        email=row.email,
        status=row.status,
        stripe_customer_id=row.stripe_customer_id,
        plan=PlanTier.coerce(row.plan),
        plan_expires_at=row.plan_expires_at,
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(row)


def get_user_by_stripe_customer_id(customer_id: str, session: Optional[Session] = None) -> Optional[User]:
    if session is None:
        with get_db_session() as own_session:
            return get_user_by_stripe_customer_id(customer_id, own_session)

    row = session.execute(
        select(app_users).where(app_users.c.stripe_customer_id == customer_id)
    ).first()
    if not row:
        return None
    return _row_to_user(row)


def get_or_create_user(
    user_id: str,
    *,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
) -> User:
    existing = get_user(user_id)
    if existing:
        return existing

    now = datetime.now(timezone.utc)
    display = normalize_display_name(user_id, display_name)
    with get_db_session() as session:
        session.execute(
            insert(app_users).values(
                user_id=user_id,
                display_name=display,
                email=email,
                status="active",
                stripe_customer_id=stripe_customer_id,
                plan=PlanTier.FREE.value,
                plan_expires_at=None,
                created_at=now,
            )
        )

    return User(
        user_id=user_id,
        created_at=now,
        display_name=display,
        email=email,
        status="active",
        stripe_customer_id=stripe_customer_id,
    )


def set_stripe_customer_id(user_id: str, customer_id: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(stripe_customer_id=customer_id)
        )
