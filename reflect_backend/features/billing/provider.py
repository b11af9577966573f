"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.) and the
normalized shapes they return, so business logic never touches SDK objects.
"""
from typing import Protocol, Dict, Any, Iterator, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

from reflect_backend.core.errors import DependencyUnavailableError


@dataclass(frozen=True)
class ProviderSubscription:
    """A provider subscription reduced to the fields entitlement cares about."""
    id: str
    customer_id: Optional[str]
    status: str
    created: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None


@dataclass(frozen=True)
class BillingWebhookEvent:
    """Verified webhook event."""
    event_id: str
    event_type: str
    subscription: Optional[ProviderSubscription] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Every call must be bounded by a timeout and raise BillingProviderError on
    failure; callers decide whether to degrade or propagate.
    """

    def find_customer_by_email(self, email: str) -> Optional[str]:
        """Return the provider customer ID for an email, or None."""
        ...

    def get_customer_email(self, customer_id: str) -> Optional[str]:
        """Return the customer's email, or None if deleted / missing."""
        ...

    def create_customer(self, email: str, user_id: Optional[str] = None) -> str:
        """Create a customer and return its ID."""
        ...

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[ProviderSubscription]:
        """List a customer's subscriptions in every status."""
        ...

    def iter_all_subscriptions(self) -> Iterator[ProviderSubscription]:
        """Iterate every subscription the provider knows about (paginated)."""
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> ProviderSubscription:
        ...

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Cancel immediately."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a self-service portal session and return its URL."""
        ...

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        ...

    def preview_upcoming_invoice(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Return the next invoice preview, or None when nothing is upcoming."""
        ...

    def construct_event(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(DependencyUnavailableError):
    """Provider call failed or timed out."""
    code = "billing_provider_error"

    def __init__(self, message: str, *, provider_code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider_code = provider_code


class BillingWebhookError(BillingProviderError):
    """Webhook signature or payload rejected."""
    code = "invalid_webhook"
    status_code = 400
    retryable = False
