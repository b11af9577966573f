"""
Webhook/sync ingestor (no real Stripe calls).
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert

from reflect_backend.core.database import get_db_session, profiles
from reflect_backend.core.errors import DependencyUnavailableError, UserNotFoundError
from reflect_backend.features.billing import service as billing_service
from reflect_backend.features.billing.ingest import ingest_subscription, run_subscription_sync
from reflect_backend.features.billing.plans import FREE_TIER, PREMIUM_TIER
from reflect_backend.features.billing.provider import BillingProviderError, BillingWebhookError
from reflect_backend.features.subscriptions.store import get_snapshot
from reflect_backend.tests.fakes import (
    VALID_SIGNATURE,
    make_subscription,
    stripe_subscription_payload,
    subscription_event,
)


@pytest.fixture
def known_user():
    with get_db_session() as session:
        session.execute(insert(profiles).values(id="user-1", email="user1@example.com"))
    return "user-1"


def test_ingest_writes_snapshot(fake_provider, known_user):
    fake_provider.add_customer("cus_1", "user1@example.com")
    period_end = datetime(2030, 1, 1, tzinfo=timezone.utc)
    sub = make_subscription(status="trialing", current_period_end=period_end, cancel_at_period_end=True)

    stored = ingest_subscription(fake_provider, sub)

    assert stored.user_id == known_user
    snapshot = get_snapshot(known_user)
    assert snapshot.tier == PREMIUM_TIER
    assert snapshot.status == "trialing"
    assert snapshot.current_period_end == period_end
    assert snapshot.cancel_at_period_end is True
    assert snapshot.external_subscription_id == "sub_1"


def test_unknown_price_maps_to_free_tier(fake_provider, known_user):
    fake_provider.add_customer("cus_1", "user1@example.com")
    ingest_subscription(fake_provider, make_subscription(price_id="price_legacy"))
    assert get_snapshot(known_user).tier == FREE_TIER


def test_ingest_deleted_customer_is_user_not_found(fake_provider):
    fake_provider.add_customer("cus_1", None)
    with pytest.raises(UserNotFoundError):
        ingest_subscription(fake_provider, make_subscription())


def test_sync_skips_unresolved_users_and_continues(fake_provider, known_user):
    fake_provider.add_customer("cus_1", "user1@example.com")
    fake_provider.add_customer("cus_2", "stranger@example.com")
    fake_provider.add_customer("cus_3", None)
    fake_provider.add_subscription(make_subscription("sub_2", "cus_2"))
    fake_provider.add_subscription(make_subscription("sub_3", "cus_3"))
    fake_provider.add_subscription(make_subscription("sub_1", "cus_1", status="past_due"))
    sleeps = []

    result = run_subscription_sync(fake_provider, delay_seconds=0.25, sleep=sleeps.append)

    assert result == {"synced": 1, "errors": 0, "skipped": 2}
    assert get_snapshot(known_user).status == "past_due"
    assert sleeps == [0.25, 0.25]


def test_sync_counts_provider_errors(fake_provider, known_user, monkeypatch):
    fake_provider.add_subscription(make_subscription("sub_1", "cus_1"))

    def failing_lookup(customer_id):
        raise BillingProviderError("timeout")

    monkeypatch.setattr(fake_provider, "get_customer_email", failing_lookup)
    result = run_subscription_sync(fake_provider, delay_seconds=0)
    assert result == {"synced": 0, "errors": 1, "skipped": 0}


def test_sync_is_idempotent(fake_provider, known_user):
    fake_provider.add_customer("cus_1", "user1@example.com")
    fake_provider.add_subscription(make_subscription("sub_1", "cus_1"))

    run_subscription_sync(fake_provider, delay_seconds=0)
    first = get_snapshot(known_user)
    run_subscription_sync(fake_provider, delay_seconds=0)
    second = get_snapshot(known_user)

    assert first.status == second.status == "active"
    assert first.external_subscription_id == second.external_subscription_id


def test_sync_dry_run_writes_nothing(fake_provider, known_user):
    fake_provider.add_customer("cus_1", "user1@example.com")
    fake_provider.add_subscription(make_subscription("sub_1", "cus_1"))

    result = run_subscription_sync(fake_provider, delay_seconds=0, dry_run=True)

    assert result["synced"] == 1
    assert get_snapshot(known_user) is None


def test_webhook_subscription_updated_is_ingested(fake_provider, known_user):
    fake_provider.add_customer("cus_1", "user1@example.com")
    body = subscription_event(
        "customer.subscription.updated",
        stripe_subscription_payload(status="active", cancel_at_period_end=True),
    )

    result = billing_service.process_webhook_event({"stripe-signature": VALID_SIGNATURE}, body)

    assert result["ingested"] is True
    snapshot = get_snapshot(known_user)
    assert snapshot.status == "active"
    assert snapshot.cancel_at_period_end is True
    assert snapshot.current_period_end > datetime.now(timezone.utc) + timedelta(days=29)


def test_webhook_deleted_marks_canceled(fake_provider, known_user):
    fake_provider.add_customer("cus_1", "user1@example.com")
    body = subscription_event("customer.subscription.deleted", stripe_subscription_payload(status="canceled"))

    billing_service.process_webhook_event({"stripe-signature": VALID_SIGNATURE}, body)
    assert get_snapshot(known_user).status == "canceled"


def test_webhook_other_events_acknowledged(fake_provider):
    body = subscription_event("invoice.paid", {"id": "in_1", "object": "invoice"})
    result = billing_service.process_webhook_event({"stripe-signature": VALID_SIGNATURE}, body)
    assert result == {"received": True, "event_type": "invoice.paid", "ingested": False}


def test_webhook_unknown_user_acknowledged(fake_provider):
    fake_provider.add_customer("cus_1", "stranger@example.com")
    body = subscription_event("customer.subscription.created", stripe_subscription_payload())
    result = billing_service.process_webhook_event({"stripe-signature": VALID_SIGNATURE}, body)
    assert result["ingested"] is False


def test_webhook_bad_signature_rejected(fake_provider):
    body = subscription_event("customer.subscription.created", stripe_subscription_payload())
    with pytest.raises(BillingWebhookError) as exc:
        billing_service.process_webhook_event({"stripe-signature": "t=1,v1=forged"}, body)
    assert exc.value.status_code == 400


def test_webhook_without_billing_configured():
    with pytest.raises(DependencyUnavailableError) as exc:
        billing_service.process_webhook_event({}, b"{}")
    assert exc.value.code == "billing_disabled"


def test_deleted_old_plan_does_not_override_active_plan(fake_provider, known_user):
    now = datetime.now(timezone.utc)
    fake_provider.add_customer("cus_1", "user1@example.com")
    fake_provider.add_subscription(make_subscription("sub_new", "cus_1", "active", created=now - timedelta(days=1)))

    created = subscription_event(
        "customer.subscription.created",
        stripe_subscription_payload(sub_id="sub_new", status="active"),
        event_id="evt_new",
    )
    billing_service.process_webhook_event({"stripe-signature": VALID_SIGNATURE}, created)

    deleted = subscription_event(
        "customer.subscription.deleted",
        stripe_subscription_payload(sub_id="sub_old", status="canceled", created=int((now - timedelta(days=90)).timestamp())),
        event_id="evt_old",
    )
    result = billing_service.process_webhook_event({"stripe-signature": VALID_SIGNATURE}, deleted)

    assert result["status"] == "active"
    snapshot = get_snapshot(known_user)
    assert snapshot.status == "active"
    assert snapshot.external_subscription_id == "sub_new"


def test_ingest_prefers_trialing_over_newer_canceled(fake_provider, known_user):
    now = datetime.now(timezone.utc)
    fake_provider.add_customer("cus_1", "user1@example.com")
    fake_provider.add_subscription(make_subscription("sub_trial", "cus_1", "trialing", created=now - timedelta(days=5)))
    canceled = make_subscription("sub_gone", "cus_1", "canceled", created=now - timedelta(hours=1))

    stored = ingest_subscription(fake_provider, canceled)

    assert stored.status == "trialing"
    assert stored.external_subscription_id == "sub_trial"


def test_sync_writes_each_customer_once_with_ranked_subscription(fake_provider, known_user):
    now = datetime.now(timezone.utc)
    fake_provider.add_customer("cus_1", "user1@example.com")
    # newest first, as the provider lists them
    fake_provider.add_subscription(make_subscription("sub_new", "cus_1", "active", created=now - timedelta(days=1)))
    fake_provider.add_subscription(make_subscription("sub_old", "cus_1", "canceled", created=now - timedelta(days=90)))
    sleeps = []

    result = run_subscription_sync(fake_provider, delay_seconds=0.5, sleep=sleeps.append)

    assert result == {"synced": 1, "errors": 0, "skipped": 0}
    assert sleeps == []
    snapshot = get_snapshot(known_user)
    assert snapshot.status == "active"
    assert snapshot.external_subscription_id == "sub_new"


def test_sync_listing_failure_returns_partial_counts(fake_provider, known_user, monkeypatch):
    fake_provider.add_customer("cus_1", "user1@example.com")
    first = make_subscription("sub_1", "cus_1", "active")

    def broken_listing():
        yield first
        raise BillingProviderError("Stripe subscription listing failed: timeout", provider_code="api_connection_error")

    monkeypatch.setattr(fake_provider, "iter_all_subscriptions", broken_listing)

    result = run_subscription_sync(fake_provider, delay_seconds=0)

    assert result == {"synced": 1, "errors": 1, "skipped": 0}
    assert get_snapshot(known_user).status == "active"
