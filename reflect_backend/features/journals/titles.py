"""
Journal title generation.

Titles come from a Groq chat completion over a PII-redacted, truncated
summary. Generation is best effort: any failure yields None and the caller
falls back to the default title for the reflection type.
"""
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import groq
from sqlalchemy import select, update, or_, and_

from reflect_backend.core.config import settings
from reflect_backend.core.database import get_db_session, reflections
from reflect_backend.models.journal import DEFAULT_TITLES, FALLBACK_TITLE, TitleSource

logger = logging.getLogger(__name__)

MAX_SUMMARY_CHARS = 2000
MAX_TITLE_CHARS = 60
MAX_BATCH_SIZE = 100
REDACTED = "[REDACTED]"

PII_PATTERNS = [
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),  # emails
    re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),  # phone numbers
    re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b"),  # SSN
]

SYSTEM_PROMPT = (
    "You are a journal title generator. Create concise, descriptive titles "
    "(max 60 characters) that capture the essence of journal entries. Generate "
    "titles in the same language as the input. Be specific and emotional when "
    "appropriate. Return ONLY the title text, nothing else."
)


@dataclass(frozen=True)
class GeneratedTitle:
    title: str
    model: str


def redact_pii(text: str) -> str:
    for pattern in PII_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def clean_title(raw: str) -> str:
    title = raw.strip()
    title = re.sub(r"^[\"']|[\"']$", "", title)
    return title.strip()[:MAX_TITLE_CHARS]


def _client() -> groq.Groq:
    return groq.Groq(
        api_key=settings.GROQ_API_KEY,
        timeout=settings.TITLE_TIMEOUT_SECONDS,
        max_retries=0,
    )


def generate_title(summary: str) -> Optional[GeneratedTitle]:
    """Ask the model for a title. Returns None on any failure."""
    if not settings.GROQ_API_KEY:
        return None

    prompt_summary = redact_pii(summary)[:MAX_SUMMARY_CHARS]
    started = time.monotonic()

    try:
        completion = _client().chat.completions.create(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Generate a short, descriptive title (max {MAX_TITLE_CHARS} characters) "
                        f"for this journal entry:\n\n{prompt_summary}"
                    ),
                },
            ],
            model=settings.TITLE_MODEL,
            temperature=0.2,
            max_tokens=30,
        )
    except groq.APIError as e:
        logger.warning(
            "[titles] generation failed",
            extra={"error_message": str(e), "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return None

    content = completion.choices[0].message.content if completion.choices else None
    title = clean_title(content or "")
    if not title:
        logger.warning("[titles] empty completion")
        return None

    logger.info(
        "[titles] generated",
        extra={"title_length": len(title), "duration_ms": int((time.monotonic() - started) * 1000)},
    )
    return GeneratedTitle(title=title, model=settings.TITLE_MODEL)


@dataclass
class BackfillResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: bool = False
    batches: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "batches": self.batches,
            "errors": list(self.errors),
        }


def _needs_title_clause():
    placeholder_titles = list(DEFAULT_TITLES.values()) + [FALLBACK_TITLE]
    return and_(
        reflections.c.saved.is_(True),
        reflections.c.title_manual_override.is_(False),
        or_(
            reflections.c.title.is_(None),
            reflections.c.title_source.is_(None),
            reflections.c.title_source == TitleSource.DEFAULT.value,
            reflections.c.title.in_(placeholder_titles),
        ),
    )


def backfill_titles(
    dry_run: bool = False,
    batch_size: int = 50,
    max_batches: int = 20,
    item_delay_seconds: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
) -> BackfillResult:
    """
    Generate titles for saved journals that only have a missing or default
    title and were never renamed by hand.

    Each journal is attempted at most once per run, so failures do not
    cycle through later batches.
    """
    batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
    result = BackfillResult(dry_run=dry_run)
    attempted: List[str] = []

    logger.info(f"[titles] backfill starting (dry_run={dry_run}, batch_size={batch_size}, max_batches={max_batches})")

    for _ in range(max_batches):
        query = select(reflections.c.id, reflections.c.summary).where(_needs_title_clause())
        if attempted:
            query = query.where(reflections.c.id.notin_(attempted))
        query = query.order_by(reflections.c.created_at, reflections.c.id).limit(batch_size)

        with get_db_session() as session:
            rows = session.execute(query).fetchall()
        if not rows:
            break

        result.batches += 1
        for row in rows:
            attempted.append(row.id)
            result.processed += 1

            if not (row.summary or "").strip():
                result.skipped += 1
                continue

            if dry_run:
                logger.info(f"[titles] dry run: would generate title for {row.id}")
                result.successful += 1
                continue

            generated = generate_title(row.summary)
            if generated is None:
                result.failed += 1
                result.errors.append({"id": row.id, "error": "Failed to generate title"})
                continue

            with get_db_session() as session:
                session.execute(
                    update(reflections)
                    .where(reflections.c.id == row.id)
                    .values(
                        title=generated.title,
                        generated_title=generated.title,
                        title_source=TitleSource.AI.value,
                        title_model=generated.model,
                        title_generated_at=datetime.now(timezone.utc),
                    )
                )
            result.successful += 1

            if item_delay_seconds > 0:
                sleep(item_delay_seconds)

    logger.info("[titles] backfill complete", extra=result.as_dict())
    return result
