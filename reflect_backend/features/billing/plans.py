"""
Plan tiers and the price-ID-to-tier mapping table.

The mapping is a closed set: anything not listed maps to the free tier.
New paid plans are added as entries (STRIPE_PRICE_TIERS), never as new
code paths.
"""
from typing import Dict, Optional

from reflect_backend.core.config import settings

FREE_TIER = "Free Spirit"
PREMIUM_TIER = "Inner Explorer"


def _parse_extra_tiers(raw: str) -> Dict[str, str]:
    """Parse "price_a=Tier A,price_b=Tier B" into a dict."""
    mapping: Dict[str, str] = {}
    for pair in (raw or "").split(","):
        price_id, sep, tier = pair.partition("=")
        if sep and price_id.strip() and tier.strip():
            mapping[price_id.strip()] = tier.strip()
    return mapping


def price_tier_map() -> Dict[str, str]:
    mapping = {settings.STRIPE_PRICE_INNER_EXPLORER: PREMIUM_TIER}
    mapping.update(_parse_extra_tiers(settings.STRIPE_PRICE_TIERS))
    return mapping


def tier_for_price(price_id: Optional[str]) -> str:
    if not price_id:
        return FREE_TIER
    return price_tier_map().get(price_id, FREE_TIER)


def free_tier_limit() -> int:
    return settings.FREE_TIER_JOURNAL_LIMIT
