"""
planwarden/features/entitlements/store.py

Entitlement store and user projection sync.

The entitlements table is the source of truth. `app_users.plan` and
`app_users.plan_expires_at` are a projection of it for hot-path quota checks,
and are rewritten in the same transaction as every entitlement write.

Writes are merges: callers pass only the fields their transition computed.
Updates are compare-and-set on the row's own `updated_at`, so two events for
the same user cannot silently overwrite each other's read.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from planwarden.core.config import settings
from planwarden.core.database import get_db_session, entitlements, users as app_users
from planwarden.core.errors import InfrastructureError
from planwarden.features.audit.service import record_audit_event
from planwarden.models.entitlement import Entitlement, EntitlementStatus
from planwarden.models.plan import PlanTier


logger = logging.getLogger(__name__)

ENTITLEMENT_FIELDS = ("plan", "plan_expires_at", "stripe_subscription_id", "status")

_DEFAULTS: Dict[str, Any] = {
    "plan": PlanTier.FREE.value,
    "plan_expires_at": None,
    "stripe_subscription_id": None,
    "status": EntitlementStatus.ACTIVE.value,
}


class EntitlementConflict(Exception):
    """Another writer touched the row between our read and our write."""


# Decides from the stored entitlement (None if absent) whether a write applies
Precondition = Callable[[Optional[Entitlement]], bool]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(ENTITLEMENT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown entitlement fields: {sorted(unknown)}")
    values = dict(fields)
    if "plan" in values:
        values["plan"] = PlanTier.coerce(values["plan"]).value
    if "status" in values:
        values["status"] = EntitlementStatus(values["status"]).value
    if values.get("plan_expires_at") is not None:
        values["plan_expires_at"] = _as_utc(values["plan_expires_at"])
    return values


def _row_to_entitlement(row) -> Entitlement:
    return Entitlement(
        user_id=row.user_id,
        plan=PlanTier.coerce(row.plan),
        plan_expires_at=row.plan_expires_at,
        stripe_subscription_id=row.stripe_subscription_id,
        status=EntitlementStatus(row.status),
        updated_at=row.updated_at,
    )


def _read_row(session: Session, user_id: str):
    return session.execute(
        select(entitlements).where(entitlements.c.user_id == user_id)
    ).first()


def get_entitlement(user_id: str, session: Optional[Session] = None) -> Optional[Entitlement]:
    if session is not None:
        row = _read_row(session, user_id)
        return _row_to_entitlement(row) if row else None
    with get_db_session() as own_session:
        return get_entitlement(user_id, own_session)


def upsert_entitlement(
    session: Session,
    user_id: str,
    fields: Dict[str, Any],
    when: Optional[Precondition] = None,
) -> Optional[Entitlement]:
    """
    Merge `fields` into the user's entitlement row inside `session`.

    Inserts the row on first write. Raises IntegrityError if a concurrent
    insert won, and EntitlementConflict if a concurrent update moved
    `updated_at`. Returns None without writing if `when` rejects the stored
    entitlement (None when there is no row yet).
    """
    values = _normalize_fields(fields)
    now = _utcnow()
    row = _read_row(session, user_id)

    if when is not None and not when(_row_to_entitlement(row) if row else None):
        return None

    if row is None:
        merged = {**_DEFAULTS, **values}
        session.execute(
            insert(entitlements).values(
                user_id=user_id,
                created_at=now,
                updated_at=now,
                **merged,
            )
        )
        return Entitlement(user_id=user_id, updated_at=now, **merged)

    previous = _as_utc(row.updated_at)
    # Strictly increasing so the next writer's compare-and-set sees a change
    next_updated_at = max(now, previous + timedelta(microseconds=1))
    result = session.execute(
        update(entitlements)
        .where(entitlements.c.user_id == user_id)
        .where(entitlements.c.updated_at == row.updated_at)
        .values(updated_at=next_updated_at, **values)
    )
    if result.rowcount != 1:
        raise EntitlementConflict(user_id)

    merged = {field: getattr(row, field) for field in ENTITLEMENT_FIELDS}
    merged.update(values)
    return Entitlement(user_id=user_id, updated_at=next_updated_at, **merged)


def sync_entitlement_to_user(user_id: str, session: Optional[Session] = None) -> bool:
    """
    Copy {plan, plan_expires_at} from the entitlement row onto the user record.

    Returns False if there is no entitlement or no user row to sync.
    """
    if session is None:
        with get_db_session() as own_session:
            return sync_entitlement_to_user(user_id, own_session)

    row = _read_row(session, user_id)
    if row is None:
        return False
    result = session.execute(
        update(app_users)
        .where(app_users.c.user_id == user_id)
        .values(plan=row.plan, plan_expires_at=row.plan_expires_at)
    )
    if result.rowcount != 1:
        logger.warning(
            "[entitlements] projection sync found no user row",
            extra={"user_id": user_id},
        )
        return False
    return True


def _apply(
    session: Session,
    user_id: str,
    fields: Dict[str, Any],
    when: Optional[Precondition],
    audit_action: Optional[str],
    audit_metadata: Optional[Dict[str, Any]],
    event_id: Optional[str],
) -> Optional[Entitlement]:
    entitlement = upsert_entitlement(session, user_id, fields, when=when)
    if entitlement is None:
        return None
    sync_entitlement_to_user(user_id, session)
    if audit_action:
        record_audit_event(
            action=audit_action,
            user_id=user_id,
            event_id=event_id,
            metadata=audit_metadata,
            session=session,
        )
    logger.info(
        "[entitlements] applied",
        extra={
            "user_id": user_id,
            "event_id": event_id,
            "status": entitlement.status.value,
        },
    )
    return entitlement


def apply_entitlement_change(
    user_id: str,
    fields: Dict[str, Any],
    *,
    when: Optional[Precondition] = None,
    audit_action: Optional[str] = None,
    audit_metadata: Optional[Dict[str, Any]] = None,
    event_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> Optional[Entitlement]:
    """
    Upsert the entitlement, sync the user projection and append the audit
    entry as one transaction. The only write path for entitlement state.

    With `session` the change joins the caller's transaction and a lost race
    (EntitlementConflict, IntegrityError) propagates so the caller can retry
    the whole transaction. Without it, lost races are retried here.

    Returns:
        The written entitlement, or None if `when` rejected the stored one
    """
    if session is not None:
        return _apply(session, user_id, fields, when, audit_action, audit_metadata, event_id)

    attempts = max(1, settings.ENTITLEMENT_CAS_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            with get_db_session() as own_session:
                return _apply(own_session, user_id, fields, when, audit_action, audit_metadata, event_id)
        except (EntitlementConflict, IntegrityError) as exc:
            logger.warning(
                f"[entitlements] concurrent write, retrying ({attempt}/{attempts})",
                extra={"user_id": user_id, "event_id": event_id, "error_code": type(exc).__name__},
            )

    raise InfrastructureError(
        f"Entitlement for user {user_id} kept changing under concurrent writes"
    )
