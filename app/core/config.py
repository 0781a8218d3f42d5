from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="creditledger", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; turn off for a standalone server
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # OpenAI
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")

    # Payments
    payment_webhook_secret: str = Field(default="", alias="PAYMENT_WEBHOOK_SECRET")
    payments_test_mode: bool = Field(default=False, alias="PAYMENTS_TEST_MODE")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Accounts registering with one of these emails get role "admin"
    admin_emails_raw: str = Field(default="", alias="ADMIN_EMAILS")

    @property
    def admin_emails(self) -> List[str]:
        return [e.strip().lower() for e in self.admin_emails_raw.split(",") if e.strip()]

    # Credits
    credits_per_dollar: int = Field(default=100, alias="CREDITS_PER_DOLLAR")
    min_purchase_usd: float = Field(default=1.00, alias="MIN_PURCHASE_USD")
    max_purchase_usd: float = Field(default=10000.00, alias="MAX_PURCHASE_USD")
    signup_bonus_credits: int = Field(default=100, alias="SIGNUP_BONUS_CREDITS")
    bulk_generation_threshold: int = Field(default=10, alias="BULK_GENERATION_THRESHOLD")
    bulk_discount_percent: float = Field(default=0.20, alias="BULK_DISCOUNT_PERCENT")


@lru_cache
def get_settings() -> Settings:
    return Settings()
