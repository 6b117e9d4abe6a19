from pydantic_settings import BaseSettings
from typing import Optional, List


def _parse_csv(v: str) -> List[str]:
    """Parse comma-separated string; strip whitespace; keep non-empty."""
    if not v or not v.strip():
        return []
    return [item.strip() for item in v.split(",") if item.strip()]


_DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:3001",
]


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql://postgres:postgres@db:5432/billing"

    # CORS: comma-separated extra origins for production
    ALLOWED_ORIGINS_EXTRA: str = ""

    def get_allowed_origins(self) -> List[str]:
        """Return CORS allowed origins: default localhost + ALLOWED_ORIGINS_EXTRA."""
        return _DEFAULT_CORS_ORIGINS + _parse_csv(self.ALLOWED_ORIGINS_EXTRA)

    # Admin endpoints (X-Admin-Key header). None disables them entirely.
    ADMIN_API_KEY: Optional[str] = None

    # Payment gateway (Stripe-compatible REST API)
    GATEWAY_PROVIDER: str = "stripe"
    GATEWAY_BASE_URL: str = "https://api.stripe.com/v1"
    GATEWAY_SECRET_KEY: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Payment retry policy
    RETRY_MAX_RETRIES: int = 5
    RETRY_SCHEDULE_DAYS: str = "0,1,3,7,14"  # days to wait after the Nth failure
    RETRY_ESCALATION_THRESHOLD: int = 3

    def get_retry_schedule(self) -> List[int]:
        """Return the retry day-offset table; never empty."""
        schedule = [int(day) for day in _parse_csv(self.RETRY_SCHEDULE_DAYS)]
        return schedule or [0]

    # Background scheduler
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_SECONDS: float = 3600.0
    SCHEDULER_JITTER_SECONDS: float = 60.0
    SCHEDULER_MAX_WORKERS: int = 4
    RENEWAL_LOOKAHEAD_HOURS: int = 24
    INCOMPLETE_EXPIRY_HOURS: int = 23
    REMINDER_DAYS_AHEAD: int = 3  # trial-ending and non-renewing expiry reminders
    FAILED_PAYMENT_RETENTION_DAYS: int = 30  # failure metadata kept this long

    # Discounts
    PENDING_DISCOUNT_TTL_HOURS: Optional[int] = None  # None = pending discounts never lapse

    # Notifications (Brevo transactional email). Without an API key notifications are only logged.
    BREVO_API_KEY: Optional[str] = None
    NOTIFICATION_SENDER_EMAIL: str = "billing@example.com"
    NOTIFICATION_SENDER_NAME: str = "Billing"
    SUPPORT_EMAIL: str = "support@example.com"

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        # Environment variables win over the .env file


settings = Settings()
