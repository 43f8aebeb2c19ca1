import os
from decimal import Decimal
from typing import List
from functools import lru_cache


class Settings:
    """Application settings read from the environment"""

    # Database
    DB_DSN: str = os.getenv("DB_DSN", "")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_ECHO: bool = os.getenv("DB_ECHO", "false").lower() == "true"

    # Redis (draft slots, advance claims, auth event relay)
    REDIS_DSN: str = os.getenv("REDIS_DSN", "redis://redis:6379/0")
    DRAFT_TTL_SECONDS: int = int(os.getenv("DRAFT_TTL_SECONDS", str(60 * 60 * 24 * 7)))  # 7 days
    CLAIM_TTL_SECONDS: int = int(os.getenv("CLAIM_TTL_SECONDS", "300"))
    AUTH_EVENTS_CHANNEL: str = os.getenv("AUTH_EVENTS_CHANNEL", "checkout:auth-events")

    # Identity provider (Supabase)
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_ANON_KEY: str = os.getenv("SUPABASE_ANON_KEY", "")
    SUPABASE_SERVICE_KEY: str = os.getenv("SUPABASE_SERVICE_KEY", "")
    SITE_URL: str = os.getenv("SITE_URL", "http://localhost:5173")

    # One-time codes: providers may send up to OTP_LENGTH digits, we accept OTP_MIN_LENGTH+
    OTP_LENGTH: int = int(os.getenv("OTP_LENGTH", "8"))
    OTP_MIN_LENGTH: int = int(os.getenv("OTP_MIN_LENGTH", "6"))
    OTP_RESEND_COOLDOWN: int = int(os.getenv("OTP_RESEND_COOLDOWN", "60"))

    # Payment gateway (Stripe)
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_CURRENCY: str = os.getenv("STRIPE_CURRENCY", "usd")

    # Pricing rules
    DEFAULT_PRICE_PER_TRAVELER: Decimal = Decimal(os.getenv("DEFAULT_PRICE_PER_TRAVELER", "1200"))
    DEFAULT_DURATION_DAYS: int = int(os.getenv("DEFAULT_DURATION_DAYS", "14"))
    PERMIT_FEE: Decimal = Decimal(os.getenv("PERMIT_FEE", "50"))
    EARLY_BIRD_DISCOUNT: Decimal = Decimal(os.getenv("EARLY_BIRD_DISCOUNT", "-500"))
    TAX_RATE: Decimal = Decimal(os.getenv("TAX_RATE", "0.10"))
    DEPOSIT_FRACTION: Decimal = Decimal(os.getenv("DEPOSIT_FRACTION", "0.30"))

    # CORS
    CORS_ALLOW_ORIGINS: List[str] = []
    CORS_ALLOW_CREDENTIALS: bool = True

    # Rate Limiting
    RATE_LIMIT_DEFAULT: str = os.getenv("RATE_LIMIT_DEFAULT", "100/minute")
    RATE_LIMIT_VERIFICATION: str = os.getenv("RATE_LIMIT_VERIFICATION", "10/minute")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    def __init__(self):
        self._validate()
        self._parse_cors_origins()

    def _validate(self):
        """Validate required settings"""
        if not self.DB_DSN:
            raise ValueError("DB_DSN environment variable must be set")
        if self.OTP_MIN_LENGTH > self.OTP_LENGTH:
            raise ValueError("OTP_MIN_LENGTH cannot exceed OTP_LENGTH")
        if not Decimal("0") < self.DEPOSIT_FRACTION <= Decimal("1"):
            raise ValueError("DEPOSIT_FRACTION must be in (0, 1]")

    def _parse_cors_origins(self):
        """Parse CORS origins from environment"""
        raw_origins = os.getenv("CORS_ALLOW_ORIGINS") or os.getenv("SITE_URL", "*")

        if raw_origins.strip() == "*":
            self.CORS_ALLOW_ORIGINS = ["*"]
            self.CORS_ALLOW_CREDENTIALS = False  # Security: wildcard forbids credentials
        else:
            self.CORS_ALLOW_ORIGINS = [o.strip() for o in raw_origins.split(",") if o.strip()]
            self.CORS_ALLOW_CREDENTIALS = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
