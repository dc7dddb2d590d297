# /leadflow/config/settings.py

import os
import re
import sys
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = True

    # Redis (conversation locks + inbound dedup)
    redis_url: str = "redis://localhost:6379"

    # WhatsApp Cloud API
    whatsapp_verify_token: str
    whatsapp_app_secret: str
    whatsapp_api_base_url: str = "https://graph.facebook.com"
    whatsapp_api_version: str = "v20.0"

    # Conversation timing
    completion_quiet_period_minutes: int = 60   # cool-off after END
    stall_follow_up_delay_minutes: int = 45     # "did an agent contact you?" prompt
    follow_up_sweep_interval_minutes: int = 5
    node_follow_up_default_delay_minutes: int = 15
    completion_follow_up_default_delay_minutes: int = 60

    # Flow loading
    flow_cache_ttl_seconds: int = 60
    strict_flow_validation: bool = False  # import_flow.py always validates strictly

    # Concurrency
    conversation_lock_timeout_seconds: int = 180
    conversation_lock_wait_seconds: int = 150
    inbound_dedup_window_seconds: int = 300

    # Deployment
    environment: str = Field(default="production")
    workers: int = 2
    scheduler_timezone: str = "UTC"

    # Observability
    alerting_webhook_url: Optional[str] = None
    api_key: Optional[str] = None

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100

    # ---------------- Validators ---------------- #

    @field_validator("mongo_uri")
    @classmethod
    def mongo_uri_must_have_scheme(cls, v):
        if not re.match(r"^mongodb(\+srv)?://", v):
            raise ValueError("MONGO_URI must start with mongodb:// or mongodb+srv://")
        return v

    @field_validator(
        "completion_quiet_period_minutes",
        "stall_follow_up_delay_minutes",
        "follow_up_sweep_interval_minutes",
    )
    @classmethod
    def windows_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("Timing windows must be positive minutes")
        return v

    def get_access_token(self, token_env_key: Optional[str]) -> str:
        """
        Resolves a business number's access token from the environment.
        Only the variable name is stored in the database, never the token itself.
        """
        token = os.getenv(token_env_key) if token_env_key else None
        if not token:
            raise RuntimeError(f"Missing WhatsApp token in environment variable {token_env_key!r}")
        return token

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def validate_environment(settings_obj: Settings):
    try:
        if not settings_obj.whatsapp_verify_token:
            raise ValueError("WHATSAPP_VERIFY_TOKEN is required")

        if settings_obj.environment == "production" and not settings_obj.whatsapp_app_secret:
            raise ValueError("WHATSAPP_APP_SECRET is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
