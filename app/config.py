from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


PAYMENT_ORDERING_POLICIES = ("buffer", "direct")
REFUND_POLICIES = ("full", "tiered")
CREDENTIAL_STRATEGIES = ("priority", "round_robin")


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./reconciler.db",
        alias="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # ==============================================
    # Inbound webhook signing (per provider)
    # ==============================================
    # Secondary keys allow rotation without dropping deliveries
    calendly_webhook_signing_key: str = Field(default="", alias="CALENDLY_WEBHOOK_SIGNING_KEY")
    calendly_webhook_signing_key_secondary: str = Field(default="", alias="CALENDLY_WEBHOOK_SIGNING_KEY_SECONDARY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_secret_secondary: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET_SECONDARY")

    # Replay protection windows (seconds)
    calendly_webhook_tolerance: int = Field(default=300, alias="CALENDLY_WEBHOOK_TOLERANCE")
    stripe_webhook_tolerance: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE")

    # ==============================================
    # Outbound provider APIs (Server-Side Only!)
    # ==============================================
    # Comma-separated, first entry has the highest priority
    calendly_api_tokens: str = Field(default="", alias="CALENDLY_API_TOKENS")
    stripe_api_keys: str = Field(default="", alias="STRIPE_API_KEYS")

    calendly_base_url: str = Field(default="https://api.calendly.com", alias="CALENDLY_BASE_URL")
    stripe_base_url: str = Field(default="https://api.stripe.com/v1", alias="STRIPE_BASE_URL")
    provider_timeout_seconds: int = Field(default=20, alias="PROVIDER_TIMEOUT_SECONDS")

    # Credential health
    credential_rate_limit_cooldown: int = Field(default=60, alias="CREDENTIAL_RATE_LIMIT_COOLDOWN")
    credential_invalid_cooldown: int = Field(default=900, alias="CREDENTIAL_INVALID_COOLDOWN")
    credential_failure_threshold: int = Field(default=3, alias="CREDENTIAL_FAILURE_THRESHOLD")
    credential_strategy: str = Field(default="priority", alias="CREDENTIAL_STRATEGY")

    # ==============================================
    # Booking state machine
    # ==============================================
    payment_max_attempts: int = Field(default=3, alias="PAYMENT_MAX_ATTEMPTS")

    # "buffer": payment events wait for the scheduling confirmation
    # "direct": payment-initiated with a scheduling proof may skip SCHEDULED
    payment_without_scheduling: str = Field(default="buffer", alias="PAYMENT_WITHOUT_SCHEDULING")
    pending_event_max_wait_seconds: int = Field(default=3600, alias="PENDING_EVENT_MAX_WAIT_SECONDS")

    # Transient failure handling inside the webhook request
    transition_max_attempts: int = Field(default=3, alias="TRANSITION_MAX_ATTEMPTS")
    transition_retry_base_delay: float = Field(default=0.05, alias="TRANSITION_RETRY_BASE_DELAY")
    lock_timeout_seconds: float = Field(default=5.0, alias="LOCK_TIMEOUT_SECONDS")

    # Outbound side effects
    outbox_max_attempts: int = Field(default=5, alias="OUTBOX_MAX_ATTEMPTS")
    # Entries left in "processing" longer than this are treated as abandoned by a crashed worker
    outbox_processing_timeout_seconds: int = Field(default=300, alias="OUTBOX_PROCESSING_TIMEOUT_SECONDS")
    refund_policy: str = Field(default="full", alias="REFUND_POLICY")

    # Idempotency ledger retention (providers retry for up to 3 days)
    processed_event_retention_days: int = Field(default=7, alias="PROCESSED_EVENT_RETENTION_DAYS")

    # Worker settings (runs inside FastAPI process)
    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_poll_interval: int = Field(default=10, alias="WORKER_POLL_INTERVAL")  # seconds
    worker_batch_size: int = Field(default=50, alias="WORKER_BATCH_SIZE")
    maintenance_interval_minutes: int = Field(default=15, alias="MAINTENANCE_INTERVAL_MINUTES")

    # Admin endpoints are disabled while this is empty
    admin_api_token: str = Field(default="", alias="ADMIN_API_TOKEN")

    # Rate limiting (slowapi storage URI, e.g. memory:// or redis://host:6379)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")


    @field_validator('payment_without_scheduling')
    @classmethod
    def validate_payment_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in PAYMENT_ORDERING_POLICIES:
            raise ValueError(f"PAYMENT_WITHOUT_SCHEDULING must be one of {PAYMENT_ORDERING_POLICIES}")
        return v

    @field_validator('refund_policy')
    @classmethod
    def validate_refund_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in REFUND_POLICIES:
            raise ValueError(f"REFUND_POLICY must be one of {REFUND_POLICIES}")
        return v

    @field_validator('credential_strategy')
    @classmethod
    def validate_credential_strategy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in CREDENTIAL_STRATEGIES:
            raise ValueError(f"CREDENTIAL_STRATEGY must be one of {CREDENTIAL_STRATEGIES}")
        return v

    @field_validator(
        'calendly_webhook_tolerance',
        'stripe_webhook_tolerance',
        'payment_max_attempts',
        'transition_max_attempts',
        'outbox_max_attempts',
        'outbox_processing_timeout_seconds',
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @staticmethod
    def _split(value: str) -> List[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def calendly_api_token_list(self) -> List[str]:
        return self._split(self.calendly_api_tokens)

    @property
    def stripe_api_key_list(self) -> List[str]:
        return self._split(self.stripe_api_keys)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
