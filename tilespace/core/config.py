import logging
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GUEST_TOKEN_SECRET = "default-guest-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = "development"
    CONFIG_STRICT: bool = False
    APP_URL: str = "http://localhost:3000"

    # Tile generation (Groq)
    GROQ_API_KEY: Optional[str] = None
    AI_MODEL: str = "llama-3.1-8b-instant"
    AI_MAX_OUTPUT_TOKENS: int = 600
    AI_TEMPERATURE: float = 0.7

    # Member sessions (Clerk); secret for HS256, JWKS url for RS256
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_ISSUER: Optional[str] = None
    CLERK_AUDIENCE: Optional[str] = None
    CLERK_JWKS_URL: Optional[str] = None

    # Storage
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"
    QUOTA_BACKEND: str = "redis"  # redis | memory

    # Guests: signed cookie, 30-day counter window, cache TTL
    GUEST_TOKEN_SECRET: str = DEFAULT_GUEST_TOKEN_SECRET
    GUEST_LIMIT_WINDOW_SECONDS: int = 60 * 60 * 24 * 30
    GUEST_CACHE_TTL_SECONDS: int = 60 * 30

    # Allow requests through when the counter store is unreachable
    QUOTA_FAIL_OPEN_GUESTS: bool = True
    QUOTA_FAIL_OPEN_MEMBERS: bool = True

    # Request rate limits per client and minute (mutations under /api)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PUBLIC_PER_MINUTE: int = 10
    RATE_LIMIT_AUTHENTICATED_PER_MINUTE: int = 100
    RATE_LIMIT_CRITICAL_PER_MINUTE: int = 5

    # Membership checkout (Stripe)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_ID: Optional[str] = None
    STRIPE_SUCCESS_URL: Optional[str] = None
    STRIPE_CANCEL_URL: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


settings = Settings()

REQUIRED_KEYS = ("DATABASE_URL", "CLERK_SECRET_KEY", "GROQ_API_KEY", "STRIPE_SECRET_KEY", "STRIPE_PRICE_ID")


def missing_config(cfg: Settings) -> List[str]:
    missing = [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]
    if cfg.is_production and cfg.GUEST_TOKEN_SECRET == DEFAULT_GUEST_TOKEN_SECRET:
        missing.append("GUEST_TOKEN_SECRET")
    return missing


def validate_config(
    strict: Optional[bool] = None,
    settings_obj: Optional[Settings] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Check required keys at startup.

    Strict mode raises RuntimeError, otherwise a warning is logged. Only key
    names are reported, never values.
    """
    cfg = settings_obj or settings
    strict_mode = cfg.CONFIG_STRICT if strict is None else strict

    missing = missing_config(cfg)
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        (logger or logging.getLogger("tilespace")).warning(message)
    return True
