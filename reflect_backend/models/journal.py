"""
reflect_backend/models/journal.py

Journal (reflection) records.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class ReflectionType(str, Enum):
    DAILY = "daily"
    EVENT = "event"


class TitleSource(str, Enum):
    AI = "ai"
    DEFAULT = "default"
    MANUAL = "manual"


DEFAULT_TITLES = {
    ReflectionType.DAILY.value: "Daily Reflection",
    ReflectionType.EVENT.value: "Event Reflection",
}
FALLBACK_TITLE = "Journal Entry"


def default_title(reflection_type: Optional[str]) -> str:
    return DEFAULT_TITLES.get(reflection_type or "", FALLBACK_TITLE)


class JournalRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    summary: str
    reflection_type: ReflectionType
    saved: bool = False
    title: Optional[str] = None
    title_source: Optional[TitleSource] = None
    generated_title: Optional[str] = None
    title_model: Optional[str] = None
    title_generated_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
