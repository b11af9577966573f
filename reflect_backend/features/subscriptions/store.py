"""
Subscription snapshot cache.

One row per user in `subscriptions`, overwritten by the webhook/sync
ingestor and read by the entitlement engine. Writes are last-write-wins on
`updated_at`: a snapshot older than the stored one is ignored.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, insert, update, func

from reflect_backend.core.database import get_db_session, subscriptions, profiles
from reflect_backend.core.errors import UserNotFoundError
from reflect_backend.features.users import directory
from reflect_backend.models.subscription import SubscriptionSnapshot

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_snapshot(row) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        user_id=row.user_id,
        tier=row.tier,
        status=row.status,
        current_period_end=as_utc(row.current_period_end),
        trial_end=as_utc(row.trial_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        price_id=row.price_id,
        product_id=row.product_id,
        external_subscription_id=row.subscription_id,
        updated_at=as_utc(row.updated_at),
    )


def get_snapshot(user_id: str) -> Optional[SubscriptionSnapshot]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == user_id)
        ).fetchone()
    if not row:
        return None
    return _row_to_snapshot(row)


def upsert_snapshot(snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
    """
    Write a snapshot (idempotent, overwrite by user_id).

    Returns the snapshot that is stored afterwards: the incoming one, or the
    existing one if it was newer.
    """
    values = {
        "tier": snapshot.tier,
        "status": snapshot.status,
        "current_period_end": snapshot.current_period_end,
        "trial_end": snapshot.trial_end,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
        "price_id": snapshot.price_id,
        "product_id": snapshot.product_id,
        "subscription_id": snapshot.external_subscription_id,
        "updated_at": snapshot.updated_at,
    }

    with get_db_session() as session:
        existing = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == snapshot.user_id)
        ).fetchone()

        if existing:
            stored_at = as_utc(existing.updated_at)
            if stored_at and stored_at > as_utc(snapshot.updated_at):
                logger.info(
                    "[subscriptions] stale snapshot ignored",
                    extra={"user_id": snapshot.user_id, "subscription_id": snapshot.external_subscription_id},
                )
                return _row_to_snapshot(existing)
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.user_id == snapshot.user_id)
                .values(**values)
            )
        else:
            session.execute(
                insert(subscriptions).values(user_id=snapshot.user_id, **values)
            )

    return snapshot


def resolve_user_id(email: str) -> str:
    """
    Map a billing email to a local user ID: profiles first, then the
    identity-provider directory.

    Raises:
        UserNotFoundError: no user with that email anywhere
        DependencyUnavailableError: directory lookup failed
    """
    normalized = (email or "").strip().lower()
    if not normalized:
        raise UserNotFoundError("Customer has no email")

    with get_db_session() as session:
        row = session.execute(
            select(profiles.c.id).where(func.lower(profiles.c.email) == normalized)
        ).fetchone()
    if row:
        return row[0]

    user_id = directory.find_user_id_by_email(normalized)
    if user_id:
        return user_id

    raise UserNotFoundError(f"No user found for email {normalized}")
