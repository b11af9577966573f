import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_INNER_EXPLORER: str = "price_1SDds0Jaf5VF0aw32AdFJvNb"
    STRIPE_PRICE_TIERS: str = ""  # extra "price_id=Tier Name" pairs, comma-separated
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 1

    # Bearer token identity
    AUTH_JWT_SECRET: Optional[str] = None  # when set, HS256 signatures are verified
    AUTH_ISSUER: Optional[str] = None
    AUTH_USER_URL: Optional[str] = None  # e.g. https://<project>.supabase.co/auth/v1/user
    AUTH_TIMEOUT_SECONDS: float = 5.0

    # Identity-provider directory (admin user listing)
    DIRECTORY_URL: Optional[str] = None  # e.g. https://<project>.supabase.co/auth/v1/admin/users
    DIRECTORY_SERVICE_KEY: Optional[str] = None
    DIRECTORY_TIMEOUT_SECONDS: float = 5.0

    # Journal titles
    GROQ_API_KEY: Optional[str] = None
    TITLE_MODEL: str = "llama-3.1-8b-instant"
    TITLE_TIMEOUT_SECONDS: float = 8.0

    # Entitlements
    FREE_TIER_JOURNAL_LIMIT: int = 3

    # Subscription sync
    SYNC_DELAY_SECONDS: float = 0.1

    # Admin access
    ADMIN_KEY: Optional[str] = None

    # App URLs
    PORTAL_RETURN_URL: str = "http://localhost:5173/dashboard"
    CORS_ORIGINS: str = "http://localhost:5173"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("reflect")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "GROQ_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
