"""
reflect_backend/features/entitlements/service.py

Entitlement engine: decides whether a user may create another journal.

Handles:
- Snapshot lookup, with a live provider lookup on cold start
- The free-tier rule (saved-journal count against the limit)
- Status branching for subscribed users
- Structured logs for every degradation
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from sqlalchemy import select, func, and_
from sqlalchemy.exc import SQLAlchemyError

from reflect_backend.core.database import get_db_session, reflections
from reflect_backend.core.errors import CountUnavailableError, DependencyUnavailableError
from reflect_backend.features.billing import service as billing_service
from reflect_backend.features.billing.ingest import select_subscription, snapshot_from_subscription
from reflect_backend.features.billing.plans import FREE_TIER, free_tier_limit
from reflect_backend.features.subscriptions.store import get_snapshot, as_utc
from reflect_backend.models.entitlement import EntitlementVerdict
from reflect_backend.models.identity import IdentityClaim
from reflect_backend.models.subscription import SubscriptionSnapshot, SubscriptionStatus, DENIED_STATUSES

logger = logging.getLogger(__name__)


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def count_saved_journals(user_id: str) -> int:
    """
    Number of saved journals for the user.

    Raises:
        CountUnavailableError: the count could not be read
    """
    try:
        with get_db_session() as session:
            count = session.execute(
                select(func.count())
                .select_from(reflections)
                .where(and_(reflections.c.user_id == user_id, reflections.c.saved.is_(True)))
            ).scalar()
    except SQLAlchemyError as e:
        logger.error("[entitlement] journal count failed", extra={"user_id": user_id, "error_message": str(e)})
        raise CountUnavailableError("Unable to count saved journals") from e
    return int(count or 0)


def decide(
    snapshot: Optional[SubscriptionSnapshot],
    journal_count: int,
    now: Optional[datetime] = None,
) -> EntitlementVerdict:
    """Pure decision: snapshot + count + clock -> verdict."""
    now = _normalize_now(now)

    if snapshot is None:
        limit = free_tier_limit()
        can_create = journal_count < limit
        return EntitlementVerdict(
            entitled=can_create,
            can_create_journals=can_create,
            reason="free_tier" if can_create else "free_tier_limit_reached",
            plan_name=FREE_TIER,
            journals_remaining=max(0, limit - journal_count),
            total_journals=journal_count,
        )

    status = snapshot.status
    if status == SubscriptionStatus.ACTIVE.value:
        can_create, reason = True, "granted_active"
    elif status == SubscriptionStatus.TRIALING.value:
        trial_end = as_utc(snapshot.trial_window_end)
        if trial_end is not None and trial_end > now:
            can_create = True
            reason = "granted_trialing_will_cancel" if snapshot.cancel_at_period_end else "granted_trialing"
        else:
            can_create, reason = False, "trial_expired"
    else:
        if status not in DENIED_STATUSES:
            logger.warning("[entitlement] unrecognised subscription status, denying", extra={"status": status})
        can_create, reason = False, f"subscription_{status}"

    return EntitlementVerdict(
        entitled=can_create,
        can_create_journals=can_create,
        reason=reason,
        plan_name=snapshot.tier,
        journals_remaining=None,
        total_journals=journal_count,
        status=status,
        current_period_end=snapshot.current_period_end,
        trial_end=snapshot.trial_window_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
    )


def _live_snapshot(identity: IdentityClaim) -> Optional[SubscriptionSnapshot]:
    """
    Cold-start lookup straight from the provider. The result is used for this
    decision only and never written to the cache.
    """
    provider = billing_service.get_provider()
    if provider is None:
        return None

    try:
        customer_id = provider.find_customer_by_email(identity.email)
        if not customer_id:
            return None
        sub = select_subscription(provider.list_subscriptions(customer_id))
    except DependencyUnavailableError as e:
        logger.warning(
            "[entitlement] live lookup failed, treating as free tier",
            extra={"user_id": identity.subject_id, "error_code": e.code},
        )
        return None

    if sub is None:
        return None
    return snapshot_from_subscription(identity.subject_id, sub)


def evaluate(
    identity: IdentityClaim,
    journal_count: int,
    *,
    now: Optional[datetime] = None,
) -> EntitlementVerdict:
    snapshot = get_snapshot(identity.subject_id)
    if snapshot is None:
        snapshot = _live_snapshot(identity)

    verdict = decide(snapshot, journal_count, now)
    logger.info(
        "[entitlement] verdict",
        extra={
            "user_id": identity.subject_id,
            "reason": verdict.reason,
            "can_create": verdict.can_create_journals,
            "total_journals": journal_count,
        },
    )
    return verdict


def check_entitlement(identity: IdentityClaim, *, now: Optional[datetime] = None) -> EntitlementVerdict:
    """Fresh count + evaluate."""
    return evaluate(identity, count_saved_journals(identity.subject_id), now=now)
