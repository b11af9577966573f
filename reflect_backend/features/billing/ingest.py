"""
Webhook/sync ingestor.

Turns provider subscriptions into subscription snapshots. Used by the
webhook handler (one subscription per event), the bulk sync job (every
subscription), and the self-service cancel/reactivate endpoints.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Set

from reflect_backend.core.config import settings
from reflect_backend.core.errors import UserNotFoundError
from reflect_backend.core.logging import log_event
from reflect_backend.features.billing.plans import tier_for_price
from reflect_backend.features.billing.provider import BillingProvider, BillingProviderError, ProviderSubscription
from reflect_backend.features.subscriptions.store import resolve_user_id, upsert_snapshot
from reflect_backend.models.subscription import SubscriptionSnapshot

logger = logging.getLogger(__name__)


def snapshot_from_subscription(
    user_id: str,
    subscription: ProviderSubscription,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        user_id=user_id,
        tier=tier_for_price(subscription.price_id),
        status=subscription.status,
        current_period_end=subscription.current_period_end,
        trial_end=subscription.trial_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        price_id=subscription.price_id,
        product_id=subscription.product_id,
        external_subscription_id=subscription.id,
        updated_at=now or datetime.now(timezone.utc),
    )


def _resolve_owner(provider: BillingProvider, subscription: ProviderSubscription) -> str:
    if not subscription.customer_id:
        raise UserNotFoundError(f"Subscription {subscription.id} has no customer")

    email = provider.get_customer_email(subscription.customer_id)
    if not email:
        raise UserNotFoundError(f"Customer {subscription.customer_id} deleted or has no email")

    return resolve_user_id(email)


def representative_subscription(
    provider: BillingProvider,
    subscription: ProviderSubscription,
) -> ProviderSubscription:
    """
    The subscription that should stand for this subscription's customer.

    The customer's other subscriptions are fetched and ranked together with
    `subscription`, whose copy wins over the listed one since it is the
    freshest (it came from the event or the write just made).
    """
    siblings = [s for s in provider.list_subscriptions(subscription.customer_id) if s.id != subscription.id]
    return select_subscription(siblings + [subscription])


def ingest_subscription(
    provider: BillingProvider,
    subscription: ProviderSubscription,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionSnapshot:
    """
    Resolve the subscription's owner and overwrite their snapshot with the
    customer's representative subscription.

    A customer can hold several subscriptions after a plan change, so the
    snapshot never simply mirrors the subscription that triggered the write.

    Raises:
        UserNotFoundError: customer deleted, has no email, or matches no user
        BillingProviderError / DependencyUnavailableError: lookups failed
    """
    user_id = _resolve_owner(provider, subscription)
    chosen = representative_subscription(provider, subscription)
    stored = upsert_snapshot(snapshot_from_subscription(user_id, chosen, now=now))

    log_event(
        "info",
        "subscription.ingested",
        user_id=user_id,
        event_type="subscription_ingested",
        extra={
            "subscription_id": subscription.id,
            "selected_subscription_id": chosen.id,
            "status": stored.status,
            "tier": stored.tier,
        },
    )
    return stored


def run_subscription_sync(
    provider: BillingProvider,
    delay_seconds: Optional[float] = None,
    dry_run: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, int]:
    """
    Reconcile every provider customer's subscriptions into the snapshot cache.

    Walks the full subscription listing and writes each customer once, the
    first time one of their subscriptions is seen, ranking all of that
    customer's subscriptions. Sequential with a fixed delay between
    customers. An owner that cannot be found is skipped; any other failure
    is counted and the run continues. A listing failure ends the run early
    with the counts gathered so far. Safe to re-run: every write is an
    overwrite.

    Returns:
        {"synced": int, "errors": int, "skipped": int}
    """
    delay = settings.SYNC_DELAY_SECONDS if delay_seconds is None else delay_seconds
    synced = 0
    errors = 0
    skipped = 0
    seen: Set[str] = set()

    logger.info(f"[sync] starting subscription sync (dry_run={dry_run}, delay={delay}s)")

    try:
        for subscription in provider.iter_all_subscriptions():
            if subscription.customer_id in seen:
                continue
            if subscription.customer_id:
                seen.add(subscription.customer_id)
            if synced + errors + skipped and delay > 0:
                sleep(delay)

            try:
                if dry_run:
                    _resolve_owner(provider, subscription)
                else:
                    ingest_subscription(provider, subscription)
                synced += 1
            except UserNotFoundError as e:
                skipped += 1
                logger.warning(
                    "[sync] customer skipped",
                    extra={"subscription_id": subscription.id, "reason": e.message},
                )
            except Exception as e:
                errors += 1
                logger.error(
                    "[sync] customer failed",
                    exc_info=True,
                    extra={"subscription_id": subscription.id, "error_message": str(e)},
                )
    except BillingProviderError as e:
        errors += 1
        logger.error(
            "[sync] subscription listing failed, stopping early",
            extra={"error_code": e.code, "provider_code": e.provider_code, "error_message": e.message},
        )

    logger.info(f"[sync] complete: synced={synced} errors={errors} skipped={skipped}")
    return {"synced": synced, "errors": errors, "skipped": skipped}


_STATUS_PRIORITY = {"active": 2, "trialing": 1}


def select_subscription(candidates: Iterable[ProviderSubscription]) -> Optional[ProviderSubscription]:
    """
    Pick the subscription that represents a customer: active over trialing
    over the most recently created of any status.
    """
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    best = None
    best_key = None
    for sub in candidates:
        key = (_STATUS_PRIORITY.get(sub.status, 0), sub.created or epoch)
        if best_key is None or key > best_key:
            best, best_key = sub, key
    return best
