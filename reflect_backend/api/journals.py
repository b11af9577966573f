"""
Journal API routes.

- POST /api/journals/save: entitlement-gated save
- GET  /api/journals: saved journals, newest first (never gated)
"""
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from reflect_backend.core.auth import get_current_identity
from reflect_backend.features.journals.service import list_journals, save_journal
from reflect_backend.models.identity import IdentityClaim
from reflect_backend.models.journal import JournalRecord

router = APIRouter(prefix="/api/journals", tags=["journals"])


class SaveJournalRequest(BaseModel):
    """Validated further by the gate, so bad values map to invalid_payload."""
    summary: Optional[Any] = None
    reflection_type: Optional[Any] = None


class SaveJournalResponse(BaseModel):
    success: bool
    reflection: JournalRecord
    title_generated: bool


class JournalListResponse(BaseModel):
    journals: List[JournalRecord]
    count: int


@router.post("/save", response_model=SaveJournalResponse)
def save(request: SaveJournalRequest, identity: IdentityClaim = Depends(get_current_identity)):
    """
    Save a journal if the caller may create one.

    Errors:
        400: invalid_payload
        401: unauthorized
        403: not_entitled (with reason)
        500: count_unavailable (retryable)
    """
    result = save_journal(identity, request.summary, request.reflection_type)
    return SaveJournalResponse(success=True, reflection=result.journal, title_generated=result.title_generated)


@router.get("", response_model=JournalListResponse)
def list_saved(
    limit: int = Query(100, ge=1, le=500),
    identity: IdentityClaim = Depends(get_current_identity),
):
    journals = list_journals(identity.subject_id, limit=limit)
    return JournalListResponse(journals=journals, count=len(journals))
