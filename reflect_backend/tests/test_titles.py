"""
Title generation and the default-title backfill.
"""
import groq
import httpx
import pytest
from sqlalchemy import insert, select

from reflect_backend.core.config import settings
from reflect_backend.core.database import get_db_session, reflections
from reflect_backend.features.journals import titles
from reflect_backend.features.journals.titles import backfill_titles, clean_title, generate_title, redact_pii
from reflect_backend.tests.fakes import FakeGroq


@pytest.fixture
def groq_enabled(monkeypatch):
    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")
    fake = FakeGroq(content='"Finding Calm In Chaos"')
    monkeypatch.setattr(titles, "_client", lambda: fake)
    return fake


def _journal(journal_id, **values):
    row = dict(
        id=journal_id,
        user_id="user-1",
        summary="A long walk",
        reflection_type="daily",
        saved=True,
        title="Daily Reflection",
        title_source="default",
    )
    row.update(values)
    with get_db_session() as session:
        session.execute(insert(reflections).values(**row))


def _title(journal_id):
    with get_db_session() as session:
        return session.execute(
            select(reflections.c.title, reflections.c.title_source).where(reflections.c.id == journal_id)
        ).fetchone()


def test_redact_pii():
    text = "Email me at jane.doe@example.com or call 555-123-4567, ssn 123-45-6789."
    redacted = redact_pii(text)
    assert "jane.doe@example.com" not in redacted
    assert "555-123-4567" not in redacted
    assert "123-45-6789" not in redacted
    assert redacted.count("[REDACTED]") == 3


def test_clean_title():
    assert clean_title('"Quoted Title"') == "Quoted Title"
    assert clean_title("'single'") == "single"
    assert len(clean_title("x" * 200)) == 60


def test_generate_title_sends_redacted_truncated_prompt(groq_enabled):
    summary = "contact me@example.com " + "y" * 5000
    generated = generate_title(summary)

    assert generated.title == "Finding Calm In Chaos"
    assert generated.model == settings.TITLE_MODEL
    request = groq_enabled.completions.requests[0]
    prompt = request["messages"][1]["content"]
    assert "me@example.com" not in prompt
    assert prompt.count("y") <= 2000
    assert request["temperature"] == 0.2
    assert request["max_tokens"] == 30


def test_generate_title_without_key_returns_none():
    assert generate_title("anything") is None


def test_generate_title_api_error_returns_none(monkeypatch):
    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")
    error = groq.APITimeoutError(request=httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions"))
    monkeypatch.setattr(titles, "_client", lambda: FakeGroq(error=error))
    assert generate_title("anything") is None


def test_generate_title_empty_completion_returns_none(monkeypatch):
    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")
    monkeypatch.setattr(titles, "_client", lambda: FakeGroq(content="  "))
    assert generate_title("anything") is None


def test_backfill_updates_default_titles_only(groq_enabled):
    _journal("j-default")
    _journal("j-null", title=None, title_source=None)
    _journal("j-manual", title="My Own Title", title_source="manual", title_manual_override=True)
    _journal("j-ai", title="Already Nice", title_source="ai")
    _journal("j-unsaved", saved=False)

    result = backfill_titles(dry_run=False, batch_size=10, item_delay_seconds=0)

    assert result.processed == 2
    assert result.successful == 2
    assert result.failed == 0
    assert tuple(_title("j-default")) == ("Finding Calm In Chaos", "ai")
    assert tuple(_title("j-null")) == ("Finding Calm In Chaos", "ai")
    assert tuple(_title("j-manual")) == ("My Own Title", "manual")
    assert tuple(_title("j-ai")) == ("Already Nice", "ai")
    assert tuple(_title("j-unsaved")) == ("Daily Reflection", "default")


def test_backfill_dry_run_changes_nothing(groq_enabled):
    _journal("j1")
    _journal("j2")

    result = backfill_titles(dry_run=True, batch_size=1, max_batches=5)

    assert result.dry_run is True
    assert result.processed == 2
    assert result.successful == 2
    assert result.batches == 2
    assert groq_enabled.completions.requests == []
    assert tuple(_title("j1")) == ("Daily Reflection", "default")


def test_backfill_failures_are_recorded_once(monkeypatch):
    monkeypatch.setattr(settings, "GROQ_API_KEY", "gsk_test")
    error = groq.APIConnectionError(request=httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions"))
    monkeypatch.setattr(titles, "_client", lambda: FakeGroq(error=error))
    _journal("j1")
    _journal("j2", summary="")

    result = backfill_titles(batch_size=1, max_batches=10, item_delay_seconds=0)

    assert result.processed == 2
    assert result.failed == 1
    assert result.skipped == 1
    assert result.errors == [{"id": "j1", "error": "Failed to generate title"}]


def test_backfill_batch_size_capped(groq_enabled):
    _journal("j1")
    result = backfill_titles(dry_run=True, batch_size=10_000)
    assert result.processed == 1
