"""
reflect_backend/models/entitlement.py

Entitlement verdict returned to the UI and re-checked by the save path.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class EntitlementVerdict(BaseModel):
    """
    Recomputed on every request, never persisted.

    Reason codes:
    - free_tier / free_tier_limit_reached: no subscription anywhere
    - granted_active
    - granted_trialing / granted_trialing_will_cancel
    - trial_expired
    - subscription_<status>: canceled, past_due, unpaid, incomplete, ...

    `entitled` is the legacy alias of `can_create_journals`.
    `can_view_journals` is always true; viewing is never paywalled.
    """
    model_config = ConfigDict(frozen=True)

    entitled: bool
    can_create_journals: bool
    can_view_journals: bool = True
    reason: str
    plan_name: str
    journals_remaining: Optional[int] = None
    total_journals: int
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
