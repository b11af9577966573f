"""
Journal persistence gate: every save re-checks entitlement server-side.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, func

from reflect_backend.core.database import get_db_session, reflections
from reflect_backend.core.errors import InvalidPayloadError, NotEntitledError
from reflect_backend.features.journals import service as journal_service
from reflect_backend.features.journals import titles
from reflect_backend.features.journals.service import list_journals, save_journal
from reflect_backend.features.journals.titles import GeneratedTitle
from reflect_backend.features.subscriptions.store import upsert_snapshot
from reflect_backend.models.entitlement import EntitlementVerdict
from reflect_backend.models.subscription import SubscriptionSnapshot


def _saved_count(user_id="user-1"):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(reflections).where(reflections.c.user_id == user_id)
        ).scalar()


def _subscribe(status="active"):
    upsert_snapshot(SubscriptionSnapshot(
        user_id="user-1",
        tier="Inner Explorer",
        status=status,
        current_period_end=datetime.now(timezone.utc) + timedelta(days=10),
        updated_at=datetime.now(timezone.utc),
    ))


def test_save_with_default_title_when_generation_unavailable(identity):
    result = save_journal(identity, "Walked by the river and felt calm.", "daily")

    assert result.title_generated is False
    assert result.journal.title == "Daily Reflection"
    assert result.journal.title_source.value == "default"
    assert result.journal.saved is True
    assert _saved_count() == 1


def test_event_default_title(identity):
    assert save_journal(identity, "A big day.", "event").journal.title == "Event Reflection"


def test_save_uses_generated_title(identity, monkeypatch):
    monkeypatch.setattr(
        journal_service, "generate_title", lambda summary: GeneratedTitle(title="Calm By The River", model="m")
    )
    result = save_journal(identity, "Walked by the river.", "daily")

    assert result.title_generated is True
    assert result.journal.title == "Calm By The River"
    assert result.journal.title_model == "m"
    assert result.journal.title_source.value == "ai"


def test_fourth_free_journal_is_refused(identity):
    for i in range(3):
        save_journal(identity, f"entry {i}", "daily")

    with pytest.raises(NotEntitledError) as exc:
        save_journal(identity, "one more", "daily")

    assert exc.value.reason == "free_tier_limit_reached"
    assert exc.value.status_code == 403
    assert _saved_count() == 3


def test_conditional_insert_refuses_when_count_moved(identity, monkeypatch):
    """A stale 'allowed' verdict cannot push the user past the limit."""
    for i in range(3):
        save_journal(identity, f"entry {i}", "daily")

    stale = EntitlementVerdict(
        entitled=True,
        can_create_journals=True,
        reason="free_tier",
        plan_name="Free Spirit",
        journals_remaining=1,
        total_journals=2,
    )
    monkeypatch.setattr(journal_service, "evaluate", lambda *args, **kwargs: stale)

    with pytest.raises(NotEntitledError) as exc:
        save_journal(identity, "racing save", "daily")
    assert exc.value.reason == "free_tier_limit_reached"
    assert _saved_count() == 3


def test_subscribed_user_not_limited(identity):
    _subscribe("active")
    for i in range(5):
        save_journal(identity, f"entry {i}", "event")
    assert _saved_count() == 5


def test_denied_subscription_blocks_save(identity):
    _subscribe("past_due")
    with pytest.raises(NotEntitledError) as exc:
        save_journal(identity, "entry", "daily")
    assert exc.value.reason == "subscription_past_due"
    assert _saved_count() == 0


@pytest.mark.parametrize(
    "summary, reflection_type",
    [("", "daily"), ("   ", "daily"), (None, "daily"), (42, "daily"), ("ok", "weekly"), ("ok", None)],
)
def test_invalid_payload(identity, summary, reflection_type):
    with pytest.raises(InvalidPayloadError):
        save_journal(identity, summary, reflection_type)
    assert _saved_count() == 0


def test_list_journals_newest_first_and_never_gated(identity):
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for i in range(3):
        save_journal(identity, f"entry {i}", "daily", now=base + timedelta(days=i))
    _subscribe("canceled")

    journals = list_journals("user-1")
    assert [j.summary for j in journals] == ["entry 2", "entry 1", "entry 0"]
    assert list_journals("someone-else") == []


def test_title_generation_failure_still_saves(identity, monkeypatch):
    from reflect_backend.core.config import settings
    from reflect_backend.tests.fakes import FakeGroq
    import groq
    import httpx

    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")
    error = groq.APIConnectionError(request=httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions"))
    monkeypatch.setattr(titles, "_client", lambda: FakeGroq(error=error))

    result = save_journal(identity, "Rainy afternoon.", "event")
    assert result.title_generated is False
    assert result.journal.title == "Event Reflection"
    assert _saved_count() == 1
