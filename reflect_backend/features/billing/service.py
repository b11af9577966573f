"""
Billing service orchestrator.

Coordinates:
- Webhook processing (verify, then ingest subscription events)
- Bulk subscription reconciliation
- Customer self-service (status, cancel, reactivate, upcoming invoice, portal)

All Stripe-specific code is in stripe_provider.py.
"""
import logging
from typing import Any, Dict, Optional

from reflect_backend.core.config import settings
from reflect_backend.core.errors import (
    ConflictError,
    DependencyUnavailableError,
    NotFoundError,
    UserNotFoundError,
)
from reflect_backend.core.logging import log_event
from reflect_backend.features.billing.ingest import (
    ingest_subscription,
    representative_subscription,
    run_subscription_sync,
    select_subscription,
    snapshot_from_subscription,
)
from reflect_backend.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    ProviderSubscription,
)
from reflect_backend.features.billing.stripe_provider import StripeProvider
from reflect_backend.features.subscriptions.store import upsert_snapshot
from reflect_backend.models.identity import IdentityClaim

logger = logging.getLogger(__name__)

GRANTING_STATUSES = ("active", "trialing")


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise DependencyUnavailableError("Billing is not configured", code="billing_disabled")
    return provider


def _serialize_subscription(sub: ProviderSubscription) -> Dict[str, Any]:
    return {
        "id": sub.id,
        "status": sub.status,
        "plan": sub.product_id,
        "price_id": sub.price_id,
        "current_period_end": sub.current_period_end.isoformat() if sub.current_period_end else None,
        "trial_end": sub.trial_end.isoformat() if sub.trial_end else None,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "amount": sub.unit_amount or 0,
        "currency": sub.currency or "usd",
        "interval": sub.interval or "month",
    }


def _require_customer(provider: BillingProvider, identity: IdentityClaim) -> str:
    customer_id = provider.find_customer_by_email(identity.email)
    if not customer_id:
        raise NotFoundError("No billing customer found", code="no_customer")
    return customer_id


def _record_change(provider: BillingProvider, identity: IdentityClaim, sub: ProviderSubscription) -> None:
    """Write the provider's answer straight into the caller's snapshot."""
    chosen = representative_subscription(provider, sub)
    upsert_snapshot(snapshot_from_subscription(identity.subject_id, chosen))


def process_webhook_event(headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
    """
    Verify and apply a webhook event.

    Subscription created/updated/deleted events are ingested; everything else
    is acknowledged and ignored. An event whose customer maps to no user is
    acknowledged too; the bulk sync picks it up once the user exists.

    Raises:
        BillingWebhookError: signature or payload rejected (400)
        DependencyUnavailableError: billing not configured or lookups failed
    """
    provider = _require_provider()
    event = provider.construct_event(headers, body)

    if event.subscription is None:
        logger.info(f"[billing] ignoring event type {event.event_type}", extra={"event_id": event.event_id})
        return {"received": True, "event_type": event.event_type, "ingested": False}

    try:
        snapshot = ingest_subscription(provider, event.subscription)
    except UserNotFoundError as e:
        log_event(
            "warning",
            "billing.webhook.user_not_found",
            event_type=event.event_type,
            error_code=e.code,
            extra={"event_id": event.event_id, "subscription_id": event.subscription.id},
        )
        return {"received": True, "event_type": event.event_type, "ingested": False}

    return {
        "received": True,
        "event_type": event.event_type,
        "ingested": True,
        "user_id": snapshot.user_id,
        "status": snapshot.status,
    }


def sync_all_subscriptions(delay_seconds: Optional[float] = None, dry_run: bool = False) -> Dict[str, int]:
    return run_subscription_sync(_require_provider(), delay_seconds=delay_seconds, dry_run=dry_run)


def get_billing_status(identity: IdentityClaim) -> Dict[str, Any]:
    """Subscription and recent invoices for the caller's billing customer."""
    provider = _require_provider()
    customer_id = provider.find_customer_by_email(identity.email)
    if not customer_id:
        return {
            "subscribed": False,
            "status": "none",
            "subscription": None,
            "customer_id": None,
            "invoices": [],
        }

    sub = select_subscription(provider.list_subscriptions(customer_id))
    invoices = provider.list_invoices(customer_id, limit=10)
    return {
        "subscribed": bool(sub and sub.status in GRANTING_STATUSES),
        "status": sub.status if sub else "none",
        "subscription": _serialize_subscription(sub) if sub else None,
        "customer_id": customer_id,
        "invoices": invoices,
    }


def check_subscription(identity: IdentityClaim) -> Dict[str, Any]:
    provider = _require_provider()
    customer_id = provider.find_customer_by_email(identity.email)
    if not customer_id:
        return {"subscribed": False, "subscription_end": None}

    sub = select_subscription(provider.list_subscriptions(customer_id))
    if not sub or sub.status not in GRANTING_STATUSES:
        return {"subscribed": False, "subscription_end": None}

    return {
        "subscribed": True,
        "subscription_end": sub.current_period_end.isoformat() if sub.current_period_end else None,
    }


def cancel_subscription(identity: IdentityClaim, at_period_end: bool = True) -> Dict[str, Any]:
    """Cancel the caller's active or trialing subscription, now or at period end."""
    provider = _require_provider()
    customer_id = _require_customer(provider, identity)

    candidates = [s for s in provider.list_subscriptions(customer_id) if s.status in GRANTING_STATUSES]
    sub = select_subscription(candidates)
    if sub is None:
        raise NotFoundError("No active or trialing subscription found", code="no_subscription")

    if at_period_end:
        updated = provider.set_cancel_at_period_end(sub.id, True)
    else:
        updated = provider.cancel_subscription(sub.id)

    _record_change(provider, identity, updated)
    log_event(
        "info",
        "billing.subscription.canceled",
        user_id=identity.subject_id,
        event_type="billing_cancel",
        extra={"subscription_id": updated.id, "at_period_end": at_period_end},
    )
    return {"success": True, "subscription": _serialize_subscription(updated)}


def reactivate_subscription(identity: IdentityClaim) -> Dict[str, Any]:
    """Clear a scheduled cancellation."""
    provider = _require_provider()
    customer_id = _require_customer(provider, identity)

    sub = select_subscription(provider.list_subscriptions(customer_id))
    if sub is None:
        raise NotFoundError("No subscription found", code="no_subscription")
    if not sub.cancel_at_period_end:
        raise ConflictError(
            "Subscription is not scheduled for cancellation",
            code="not_scheduled_for_cancellation",
        )

    updated = provider.set_cancel_at_period_end(sub.id, False)
    _record_change(provider, identity, updated)
    log_event(
        "info",
        "billing.subscription.reactivated",
        user_id=identity.subject_id,
        event_type="billing_reactivate",
        extra={"subscription_id": updated.id},
    )
    return {"success": True, "subscription": _serialize_subscription(updated)}


def get_upcoming_invoice(identity: IdentityClaim) -> Dict[str, Any]:
    provider = _require_provider()
    customer_id = _require_customer(provider, identity)

    invoice = provider.preview_upcoming_invoice(customer_id)
    if invoice is None:
        raise NotFoundError("No upcoming invoice available", code="no_upcoming_invoice")
    return invoice


def create_portal_session(identity: IdentityClaim, return_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Open a self-service portal session, creating the billing customer first
    when none exists for the caller's email.
    """
    provider = _require_provider()
    customer_id = provider.find_customer_by_email(identity.email)

    if not customer_id:
        logger.info("[billing] no customer found, attempting reconciliation", extra={"user_id": identity.subject_id})
        try:
            customer_id = provider.create_customer(identity.email, user_id=identity.subject_id)
        except BillingProviderError as e:
            raise DependencyUnavailableError(
                "We're linking your billing account, try again in a few seconds.",
                code="customer_reconciliation_failed",
            ) from e
        log_event(
            "info",
            "billing.customer.reconciled",
            user_id=identity.subject_id,
            event_type="customer_reconciliation",
            extra={"customer_id": customer_id},
        )

    try:
        url = provider.create_portal_session(customer_id, return_url or settings.PORTAL_RETURN_URL)
    except BillingProviderError as e:
        if e.provider_code == "account_invalid":
            raise DependencyUnavailableError(
                "The billing portal is being set up. Please contact support.",
                code="portal_not_configured",
            ) from e
        raise

    return {"url": url}
