"""
Identity-provider user directory.

Second place the ingestor looks when a billing customer's email has no row
in the local `profiles` table. Talks to the provider's admin list-users
endpoint with the service key.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from reflect_backend.core.config import settings
from reflect_backend.core.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)

PAGE_SIZE = 200
MAX_PAGES = 50


def directory_enabled() -> bool:
    return bool(settings.DIRECTORY_URL and settings.DIRECTORY_SERVICE_KEY)


def _headers() -> Dict[str, str]:
    key = settings.DIRECTORY_SERVICE_KEY or ""
    return {"Authorization": f"Bearer {key}", "apikey": key}


def _fetch_page(client: httpx.Client, page: int) -> List[Dict[str, Any]]:
    try:
        response = client.get(
            settings.DIRECTORY_URL,
            params={"page": page, "per_page": PAGE_SIZE},
            headers=_headers(),
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise DependencyUnavailableError(f"User directory request failed: {e}")

    body = response.json()
    if isinstance(body, list):
        return body
    return body.get("users") or []


def find_user_id_by_email(email: str) -> Optional[str]:
    """
    Page through the directory looking for an exact (case-insensitive)
    email match. Returns None when the directory is not configured or the
    email is unknown.

    Raises:
        DependencyUnavailableError: directory call failed or timed out
    """
    if not directory_enabled():
        return None

    target = email.strip().lower()
    with httpx.Client(timeout=settings.DIRECTORY_TIMEOUT_SECONDS) as client:
        for page in range(1, MAX_PAGES + 1):
            users = _fetch_page(client, page)
            for user in users:
                if (user.get("email") or "").lower() == target:
                    return user.get("id")
            if len(users) < PAGE_SIZE:
                break
        else:
            logger.warning(f"[directory] stopped after {MAX_PAGES} pages without a match")

    return None
