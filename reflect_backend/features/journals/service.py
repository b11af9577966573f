"""
Journal persistence gate.

Every save re-checks entitlement with a fresh count, never trusting the
client's earlier verdict. Free-tier inserts are a single conditional
statement so two concurrent saves cannot both squeeze past the limit.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import select, insert, func, and_, literal

from reflect_backend.core.database import get_db_session, reflections
from reflect_backend.core.errors import InvalidPayloadError, NotEntitledError
from reflect_backend.core.logging import log_event
from reflect_backend.features.billing.plans import free_tier_limit
from reflect_backend.features.entitlements.service import count_saved_journals, evaluate
from reflect_backend.features.journals.titles import generate_title
from reflect_backend.models.identity import IdentityClaim
from reflect_backend.models.journal import JournalRecord, ReflectionType, TitleSource, default_title

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveJournalResult:
    journal: JournalRecord
    title_generated: bool


def _validate(summary: Any, reflection_type: Any) -> ReflectionType:
    if not isinstance(summary, str) or not summary.strip():
        raise InvalidPayloadError("summary must be a non-empty string")
    try:
        return ReflectionType(reflection_type)
    except ValueError:
        raise InvalidPayloadError("reflection_type must be 'daily' or 'event'")


def _insert_if_under_limit(session, values: dict, limit: int) -> bool:
    """INSERT ... SELECT ... WHERE saved count < limit; True when a row went in."""
    saved_count = (
        select(func.count())
        .select_from(reflections)
        .where(and_(reflections.c.user_id == values["user_id"], reflections.c.saved.is_(True)))
        .scalar_subquery()
    )
    columns = list(values)
    source = select(
        *[literal(values[name], type_=reflections.c[name].type) for name in columns]
    ).where(saved_count < limit)

    result = session.execute(insert(reflections).from_select(columns, source))
    return result.rowcount == 1


def save_journal(
    identity: IdentityClaim,
    summary: Any,
    reflection_type: Any,
    *,
    now: Optional[datetime] = None,
) -> SaveJournalResult:
    """
    Persist a journal if the caller may create one.

    Raises:
        InvalidPayloadError: summary empty or reflection type unknown
        NotEntitledError: verdict denies creation (no row inserted)
        CountUnavailableError: saved-journal count could not be read
    """
    kind = _validate(summary, reflection_type)
    now = now or datetime.now(timezone.utc)
    user_id = identity.subject_id

    verdict = evaluate(identity, count_saved_journals(user_id), now=now)
    if not verdict.can_create_journals:
        log_event(
            "info",
            "journal.save.denied",
            user_id=user_id,
            event_type="journal_save",
            error_code="not_entitled",
            extra={"reason": verdict.reason},
        )
        raise NotEntitledError(verdict.reason)

    generated = generate_title(summary)
    if generated:
        title = generated.title
        title_source = TitleSource.AI
    else:
        title = default_title(kind.value)
        title_source = TitleSource.DEFAULT

    values = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "summary": summary,
        "reflection_type": kind.value,
        "saved": True,
        "title": title,
        "title_source": title_source.value,
        "title_manual_override": False,
        "created_at": now,
        "completed_at": now,
    }
    if generated:
        values.update(
            generated_title=generated.title,
            title_model=generated.model,
            title_generated_at=now,
        )

    # journals_remaining is only set on the free-tier path
    free_tier = verdict.journals_remaining is not None

    with get_db_session() as session:
        if free_tier:
            if not _insert_if_under_limit(session, values, free_tier_limit()):
                log_event(
                    "warning",
                    "journal.save.lost_race",
                    user_id=user_id,
                    event_type="journal_save",
                    error_code="not_entitled",
                )
                raise NotEntitledError("free_tier_limit_reached")
        else:
            session.execute(insert(reflections).values(**values))

    log_event(
        "info",
        "journal.saved",
        user_id=user_id,
        event_type="journal_save",
        extra={"journal_id": values["id"], "title_source": title_source.value, "reason": verdict.reason},
    )

    journal = JournalRecord(
        id=values["id"],
        user_id=user_id,
        summary=summary,
        reflection_type=kind,
        saved=True,
        title=title,
        title_source=title_source,
        generated_title=values.get("generated_title"),
        title_model=values.get("title_model"),
        title_generated_at=values.get("title_generated_at"),
        created_at=now,
        completed_at=now,
    )
    return SaveJournalResult(journal=journal, title_generated=generated is not None)


def list_journals(user_id: str, limit: int = 100) -> List[JournalRecord]:
    """Saved journals, newest first. Viewing is never gated."""
    with get_db_session() as session:
        rows = session.execute(
            select(reflections)
            .where(and_(reflections.c.user_id == user_id, reflections.c.saved.is_(True)))
            .order_by(reflections.c.created_at.desc(), reflections.c.id.desc())
            .limit(limit)
        ).fetchall()

    return [
        JournalRecord(
            id=row.id,
            user_id=row.user_id,
            summary=row.summary,
            reflection_type=row.reflection_type,
            saved=bool(row.saved),
            title=row.title,
            title_source=row.title_source,
            generated_title=row.generated_title,
            title_model=row.title_model,
            title_generated_at=row.title_generated_at,
            created_at=row.created_at,
            completed_at=row.completed_at,
        )
        for row in rows
    ]
