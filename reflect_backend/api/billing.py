"""
Billing API routes.

- POST /api/billing/webhook: Stripe webhooks (signature verified)
- GET  /api/billing/status: subscription + recent invoices
- GET  /api/billing/subscription: subscribed flag + period end
- POST /api/billing/cancel: cancel now or at period end
- POST /api/billing/reactivate: undo a scheduled cancellation
- GET  /api/billing/upcoming: next invoice preview
- POST /api/billing/portal: self-service portal session
- POST /api/billing/sync: admin-triggered bulk reconciliation
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from reflect_backend.core.admin_auth import AdminActor, require_admin
from reflect_backend.core.auth import get_current_identity
from reflect_backend.core.errors import AppError
from reflect_backend.core.logging import log_event
from reflect_backend.features.billing import service as billing_service
from reflect_backend.features.billing.provider import BillingWebhookError
from reflect_backend.models.identity import IdentityClaim

router = APIRouter(prefix="/api/billing", tags=["billing"])


class CancelRequest(BaseModel):
    at_period_end: bool = True


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class SyncRequest(BaseModel):
    delay_seconds: Optional[float] = None
    dry_run: bool = False


class SyncResponse(BaseModel):
    synced: int
    errors: int
    skipped: int
    dry_run: bool


@router.post("/webhook")
async def billing_webhook(request: Request) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Errors:
        400: invalid signature or payload
        500: anything else, including billing disabled or provider outages
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        return billing_service.process_webhook_event(headers, body)
    except BillingWebhookError:
        raise
    except AppError as e:
        log_event(
            "error",
            "billing.webhook.failed",
            error_code=e.code,
            extra={"error_message": e.message},
        )
        raise AppError("Webhook processing failed", code="internal_error", status_code=500) from e


@router.get("/status")
def billing_status(identity: IdentityClaim = Depends(get_current_identity)) -> Dict[str, Any]:
    return billing_service.get_billing_status(identity)


@router.get("/subscription")
def subscription(identity: IdentityClaim = Depends(get_current_identity)) -> Dict[str, Any]:
    return billing_service.check_subscription(identity)


@router.post("/cancel")
def cancel(
    request: Optional[CancelRequest] = None,
    identity: IdentityClaim = Depends(get_current_identity),
) -> Dict[str, Any]:
    at_period_end = request.at_period_end if request else True
    return billing_service.cancel_subscription(identity, at_period_end=at_period_end)


@router.post("/reactivate")
def reactivate(identity: IdentityClaim = Depends(get_current_identity)) -> Dict[str, Any]:
    return billing_service.reactivate_subscription(identity)


@router.get("/upcoming")
def upcoming(identity: IdentityClaim = Depends(get_current_identity)) -> Dict[str, Any]:
    """
    Errors:
        404: no_customer / no_upcoming_invoice
    """
    return billing_service.get_upcoming_invoice(identity)


@router.post("/portal", response_model=PortalResponse)
def portal(
    request: Optional[PortalRequest] = None,
    identity: IdentityClaim = Depends(get_current_identity),
):
    """
    Errors:
        503: customer_reconciliation_failed / portal_not_configured
    """
    return billing_service.create_portal_session(identity, request.return_url if request else None)


@router.post("/sync", response_model=SyncResponse)
def sync(request: Optional[SyncRequest] = None, actor: AdminActor = Depends(require_admin)):
    request = request or SyncRequest()
    log_event(
        "info",
        "billing.sync.requested",
        event_type="billing_sync",
        extra={"actor_id": actor.actor_id, "dry_run": request.dry_run},
    )
    result = billing_service.sync_all_subscriptions(delay_seconds=request.delay_seconds, dry_run=request.dry_run)
    return SyncResponse(dry_run=request.dry_run, **result)
