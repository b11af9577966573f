"""
reflect_backend/models/subscription.py

Subscription snapshot: the local mirror of a user's billing-provider subscription.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


DENIED_STATUSES = frozenset({
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.UNPAID.value,
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
})


class SubscriptionSnapshot(BaseModel):
    """
    One row per user. Written by the webhook/sync ingestor only.

    `status` is kept as the provider's raw string so statuses the provider
    adds later (e.g. "paused") still round-trip; the entitlement engine denies
    anything it does not recognise.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: str
    status: str
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    updated_at: datetime

    @property
    def trial_window_end(self) -> Optional[datetime]:
        return self.trial_end or self.current_period_end
