"""
Admin authentication for operational endpoints.

Shared-secret `X-Admin-Key` header compared in constant time against
ADMIN_KEY. With no ADMIN_KEY configured every admin call is refused.
"""
import hashlib
import hmac
from dataclasses import dataclass

from fastapi import Request

from reflect_backend.core.config import settings
from reflect_backend.core.errors import AuthenticationError, PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated admin caller."""
    actor_id: str  # "key:<hash prefix>", never the key itself
    auth_mechanism: str = "x_admin_key"


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency: 401 without a key, 403 with a wrong one."""
    expected_key = settings.ADMIN_KEY
    header_key = request.headers.get("X-Admin-Key", "").strip()

    if not header_key:
        raise AuthenticationError("Missing X-Admin-Key header")
    if not expected_key or not hmac.compare_digest(header_key, expected_key):
        raise PermissionError("Invalid admin key")

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")
