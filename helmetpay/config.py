from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="helmetpay")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Auth (Clerk)
    clerk_issuer: str | None = Field(default=None)
    clerk_jwks_url: str | None = Field(default=None)
    clerk_audience: str | None = Field(default=None)
    auth_disable_verification: bool = Field(default=False)
    advertiser_claim: str = Field(default="advertiser_id")

    # Data
    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    payments_rate_limit: str = Field(default="10/minute")

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    # M-Pesa (Daraja)
    mpesa_environment: str = Field(default="sandbox")  # sandbox|production
    mpesa_consumer_key: str | None = Field(default=None)
    mpesa_consumer_secret: str | None = Field(default=None)
    mpesa_business_short_code: str | None = Field(default=None)
    mpesa_passkey: str | None = Field(default=None)
    mpesa_callback_url: str | None = Field(default=None)
    mpesa_timeout_url: str | None = Field(default=None)
    mpesa_timeout_seconds: float = Field(default=8.0, gt=0, le=30)
    mpesa_timezone: str = Field(default="Africa/Nairobi")
    mpesa_currency: str = Field(default="KES", min_length=3, max_length=3)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("mpesa_environment", mode="before")
    @classmethod
    def _normalize_mpesa_environment(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
