"""
Bearer token identity resolution.

Decodes the token payload locally (no network round-trip) and requires the
`sub`, `iss` and `email` claims. When AUTH_JWT_SECRET is configured the HS256
signature and expiry are verified as well. When local decoding fails and
AUTH_USER_URL is configured, the auth authority's user endpoint is asked
instead.
"""
import logging
from typing import Any, Dict, Optional

import httpx
import jwt
from fastapi import Request

from reflect_backend.core.config import settings
from reflect_backend.core.errors import AuthenticationError
from reflect_backend.models.identity import IdentityClaim

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ("sub", "iss", "email")


def _decode_claims(token: str) -> Dict[str, Any]:
    secret = settings.AUTH_JWT_SECRET
    if secret:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )
    return jwt.decode(token, options={"verify_signature": False})


def _unverified_issuer(token: str) -> Optional[str]:
    try:
        return jwt.decode(token, options={"verify_signature": False}).get("iss")
    except jwt.PyJWTError:
        return None


def _fetch_authority_claims(token: str) -> Dict[str, Any]:
    """Ask the auth authority who owns this token."""
    headers = {"Authorization": f"Bearer {token}"}
    if settings.DIRECTORY_SERVICE_KEY:
        headers["apikey"] = settings.DIRECTORY_SERVICE_KEY
    try:
        with httpx.Client(timeout=settings.AUTH_TIMEOUT_SECONDS) as client:
            response = client.get(settings.AUTH_USER_URL, headers=headers)
    except httpx.HTTPError as e:
        logger.warning(f"[auth] authority lookup failed: {e}")
        raise AuthenticationError("Token could not be verified")

    if response.status_code != 200:
        raise AuthenticationError("Token rejected by auth authority")

    try:
        body = response.json()
    except ValueError:
        raise AuthenticationError("Auth authority returned an unreadable user")
    if not isinstance(body, dict):
        raise AuthenticationError("Auth authority returned an unreadable user")

    return {
        "sub": body.get("id"),
        "email": body.get("email"),
        "iss": _unverified_issuer(token) or settings.AUTH_ISSUER,
    }


def _claims_to_identity(claims: Dict[str, Any]) -> IdentityClaim:
    values = {}
    for name in REQUIRED_CLAIMS:
        value = claims.get(name)
        if not isinstance(value, str) or not value.strip():
            raise AuthenticationError(f"Token missing required claim '{name}'")
        values[name] = value.strip()

    return IdentityClaim(
        subject_id=values["sub"],
        issuer=values["iss"],
        email=values["email"].lower(),
    )


def resolve_identity(token: Optional[str]) -> IdentityClaim:
    """
    Resolve a bearer token to an IdentityClaim.

    Raises:
        AuthenticationError: token missing, not three dot-separated segments,
            undecodable (and no authority fallback), or missing sub/iss/email.
    """
    if not token or not token.strip():
        raise AuthenticationError("Missing bearer token")

    token = token.strip()
    segments = token.split(".")
    if len(segments) != 3 or not all(segments[:2]):
        raise AuthenticationError("Malformed bearer token")

    try:
        claims = _decode_claims(token)
    except jwt.PyJWTError as e:
        if not settings.AUTH_USER_URL:
            raise AuthenticationError(f"Invalid bearer token: {e}")
        logger.info("[auth] local decode failed, asking auth authority")
        claims = _fetch_authority_claims(token)

    return _claims_to_identity(claims)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


async def get_current_identity(request: Request) -> IdentityClaim:
    """FastAPI dependency: the caller's identity, or 401."""
    token = extract_bearer_token(request.headers.get("Authorization"))
    identity = resolve_identity(token)
    request.state.user_id = identity.subject_id
    return identity
