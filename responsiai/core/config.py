import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_UNLIMITED: Optional[str] = None

    # App URLs
    APP_URL: str = "http://localhost:5000"

    # Webhook processing
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    WEBHOOK_WORKERS: int = 4
    WEBHOOK_QUEUE_SIZE: int = 1000
    WEBHOOK_INLINE_PROCESSING: bool = True  # answer with the processing result so failures are redelivered
    WEBHOOK_REQUEUE_ATTEMPTS: int = 5  # queued mode only
    WEBHOOK_REQUEUE_BASE_SECONDS: float = 2.0
    WEBHOOK_CLAIM_TIMEOUT_SECONDS: int = 600
    PROCESSED_EVENT_RETENTION_DAYS: int = 30

    # Store / notification retries
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BASE_SECONDS: float = 0.2
    NOTIFY_RETRY_ATTEMPTS: int = 3

    # Usage metering
    USAGE_TIMEZONE: str = "UTC"

    # Email (SMTP). Unset host means log-only notifications.
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    SMTP_USE_SSL: bool = False
    EMAIL_FROM: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


@dataclass(frozen=True)
class CoreConfig:
    """Immutable configuration handed to every billing/usage component at startup."""

    env: str = "development"
    webhook_secret: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    price_ids: tuple = ()  # ((tier, price_id), ...)
    app_url: str = "http://localhost:5000"
    webhook_tolerance_seconds: int = 300
    webhook_workers: int = 4
    webhook_queue_size: int = 1000
    webhook_inline_processing: bool = True
    webhook_requeue_attempts: int = 5
    webhook_requeue_base_seconds: float = 2.0
    claim_timeout_seconds: int = 600
    event_retention_days: int = 30
    store_retry_attempts: int = 3
    store_retry_base_seconds: float = 0.2
    notify_retry_attempts: int = 3
    usage_timezone: str = "UTC"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_ssl: bool = False
    email_from: Optional[str] = None

    @property
    def billing_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.email_from)

    def price_for_tier(self, tier: str) -> Optional[str]:
        return dict(self.price_ids).get(tier)

    def tier_for_price(self, price_id: Optional[str]) -> Optional[str]:
        for tier, pid in self.price_ids:
            if pid and pid == price_id:
                return tier
        return None

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "CoreConfig":
        cfg = cfg or settings
        price_ids = tuple(
            (tier, pid)
            for tier, pid in (("pro", cfg.STRIPE_PRICE_PRO), ("unlimited", cfg.STRIPE_PRICE_UNLIMITED))
            if pid
        )
        return cls(
            env=cfg.ENV,
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
            stripe_secret_key=cfg.STRIPE_SECRET_KEY,
            price_ids=price_ids,
            app_url=cfg.APP_URL,
            webhook_tolerance_seconds=cfg.WEBHOOK_TOLERANCE_SECONDS,
            webhook_workers=cfg.WEBHOOK_WORKERS,
            webhook_queue_size=cfg.WEBHOOK_QUEUE_SIZE,
            webhook_inline_processing=cfg.WEBHOOK_INLINE_PROCESSING,
            webhook_requeue_attempts=cfg.WEBHOOK_REQUEUE_ATTEMPTS,
            webhook_requeue_base_seconds=cfg.WEBHOOK_REQUEUE_BASE_SECONDS,
            claim_timeout_seconds=cfg.WEBHOOK_CLAIM_TIMEOUT_SECONDS,
            event_retention_days=cfg.PROCESSED_EVENT_RETENTION_DAYS,
            store_retry_attempts=cfg.STORE_RETRY_ATTEMPTS,
            store_retry_base_seconds=cfg.STORE_RETRY_BASE_SECONDS,
            notify_retry_attempts=cfg.NOTIFY_RETRY_ATTEMPTS,
            usage_timezone=cfg.USAGE_TIMEZONE,
            smtp_host=cfg.SMTP_HOST,
            smtp_port=cfg.SMTP_PORT,
            smtp_user=cfg.SMTP_USER,
            smtp_password=cfg.SMTP_PASS,
            smtp_use_ssl=cfg.SMTP_USE_SSL,
            email_from=cfg.EMAIL_FROM,
        )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("responsiai")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
