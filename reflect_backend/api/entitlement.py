"""
Entitlement API.

- GET|POST /api/entitlement: the caller's current verdict
"""
from fastapi import APIRouter, Depends

from reflect_backend.core.auth import get_current_identity
from reflect_backend.features.entitlements.service import check_entitlement
from reflect_backend.models.entitlement import EntitlementVerdict
from reflect_backend.models.identity import IdentityClaim

router = APIRouter(prefix="/api", tags=["entitlement"])


@router.api_route("/entitlement", methods=["GET", "POST"], response_model=EntitlementVerdict)
def get_entitlement(identity: IdentityClaim = Depends(get_current_identity)):
    """
    Recompute the caller's entitlement.

    Errors:
        401: missing or malformed bearer token
        500: saved-journal count unavailable (retryable)
    """
    return check_entitlement(identity)
