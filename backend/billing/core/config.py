"""Application configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed settings shared by the payment and subscription services."""

    # Read .env with BOM tolerance; case-sensitive keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Billing API"
    ENV: str = "dev"  # dev | staging | prod
    DEBUG: bool = False

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = Field(default_factory=list)

    # DB
    DATABASE_URL: str | None = None  # overrides the DB_* fields when set
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_USER: str = "billing"
    DB_PASSWORD: str = ""  # set via env/.env
    DB_NAME: str = "billing"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Idempotency cache retention
    IDEMPOTENCY_TTL_HOURS: int = 24

    # Payment service API key checked on X-API-Key
    API_KEY: str = "payment-service-api-key"

    # Webhook delivery (payment -> subscription)
    WEBHOOK_SECRET: str = "webhook-secret"
    SUBSCRIPTION_SERVICE_WEBHOOK_URL: str = "http://localhost:3000/v1/webhooks/payment"
    WEBHOOK_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    WEBHOOK_RETRY_DELAY_MS: int = Field(default=1000, ge=0)
    WEBHOOK_TIMEOUT_SEC: float = 10.0

    # Payment simulation
    PAYMENT_SUCCESS_RATE: int = Field(default=80, ge=0, le=100)
    PAYMENT_PROCESSING_DELAY_MS: int = 2000
    PAYMENT_MIN_DELAY_MS: int = 1000
    PAYMENT_MAX_DELAY_MS: int = 5000

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"
        )


settings = Settings()
