"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and normalizes subscriptions,
invoices and customers into plain Python values.
"""
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, List, Optional

import stripe

from reflect_backend.core.config import settings
from reflect_backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookEvent,
    ProviderSubscription,
)

SUBSCRIPTION_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})


def _as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (recursively where the SDK supports it)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    return obj.to_dict()


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _iso(value: Optional[int]) -> Optional[str]:
    dt = _ts(value)
    return dt.isoformat() if dt else None


def parse_subscription(obj: Any) -> ProviderSubscription:
    """
    Normalize a Stripe subscription object.

    Newer API versions moved `current_period_end` onto the subscription item,
    so both places are checked.
    """
    data = _as_dict(obj)
    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    product = price.get("product")
    if isinstance(product, dict):
        product = product.get("id")
    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return ProviderSubscription(
        id=data["id"],
        customer_id=customer,
        status=data.get("status") or "incomplete",
        created=_ts(data.get("created")),
        current_period_end=_ts(data.get("current_period_end") or first_item.get("current_period_end")),
        trial_end=_ts(data.get("trial_end")),
        cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
        price_id=price.get("id"),
        product_id=product,
        unit_amount=price.get("unit_amount"),
        currency=price.get("currency"),
        interval=(price.get("recurring") or {}).get("interval"),
    )


def parse_invoice(obj: Any) -> Dict[str, Any]:
    data = _as_dict(obj)
    return {
        "id": data.get("id"),
        "number": data.get("number"),
        "date": _iso(data.get("created")),
        "amount": data.get("amount_paid"),
        "currency": data.get("currency"),
        "status": data.get("status"),
        "hosted_invoice_url": data.get("hosted_invoice_url"),
        "invoice_pdf": data.get("invoice_pdf"),
    }


def parse_upcoming_invoice(obj: Any) -> Dict[str, Any]:
    data = _as_dict(obj)
    lines = (data.get("lines") or {}).get("data") or []
    return {
        "amount": data.get("amount_due"),
        "currency": data.get("currency"),
        "period_start": _iso(data.get("period_start")),
        "period_end": _iso(data.get("period_end")),
        "lines": [
            {
                "description": line.get("description"),
                "amount": line.get("amount"),
                "currency": line.get("currency"),
                "quantity": line.get("quantity"),
            }
            for line in lines
        ],
    }


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            timeout_seconds: Per-request timeout (defaults to STRIPE_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.RequestsClient(
            timeout=timeout_seconds or settings.STRIPE_TIMEOUT_SECONDS
        )

    def find_customer_by_email(self, email: str) -> Optional[str]:
        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}", provider_code=e.code)
        if not customers.data:
            return None
        return customers.data[0].id

    def get_customer_email(self, customer_id: str) -> Optional[str]:
        try:
            customer = _as_dict(stripe.Customer.retrieve(customer_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer retrieve failed: {e}", provider_code=e.code)
        if customer.get("deleted"):
            return None
        return customer.get("email")

    def create_customer(self, email: str, user_id: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"email": email}
        if user_id:
            params["metadata"] = {"user_id": user_id}
        try:
            customer = stripe.Customer.create(**params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}", provider_code=e.code)
        return customer.id

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[ProviderSubscription]:
        try:
            subs = stripe.Subscription.list(customer=customer_id, status="all", limit=limit)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription list failed: {e}", provider_code=e.code)
        return [parse_subscription(sub) for sub in subs.data]

    def iter_all_subscriptions(self) -> Iterator[ProviderSubscription]:
        try:
            for sub in stripe.Subscription.list(status="all", limit=100).auto_paging_iter():
                yield parse_subscription(sub)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e}", provider_code=e.code)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> ProviderSubscription:
        try:
            sub = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}", provider_code=e.code)
        return parse_subscription(sub)

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            sub = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancel failed: {e}", provider_code=e.code)
        return parse_subscription(sub)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}", provider_code=e.code)

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        try:
            invoices = stripe.Invoice.list(customer=customer_id, limit=limit)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice list failed: {e}", provider_code=e.code)
        return [parse_invoice(inv) for inv in invoices.data]

    def preview_upcoming_invoice(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            invoice = stripe.Invoice.create_preview(customer=customer_id)
        except stripe.InvalidRequestError as e:
            if e.code == "invoice_upcoming_none":
                return None
            raise BillingProviderError(f"Stripe invoice preview failed: {e}", provider_code=e.code)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice preview failed: {e}", provider_code=e.code)
        return parse_upcoming_invoice(invoice)

    def construct_event(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(_as_dict(event))

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookEvent:
        """Parse Stripe event into normalized BillingWebhookEvent."""
        event_type = event["type"]
        data = (event.get("data") or {}).get("object") or {}

        subscription = None
        if event_type in SUBSCRIPTION_EVENTS:
            try:
                subscription = parse_subscription(data)
            except KeyError as e:
                raise BillingWebhookError(f"Subscription event missing field: {e}")

        return BillingWebhookEvent(
            event_id=event["id"],
            event_type=event_type,
            subscription=subscription,
            metadata=data.get("metadata") or {},
        )
