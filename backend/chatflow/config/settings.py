# /chatflow/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_atlas_uri: str = "mongodb://localhost:27017/chatflow"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis (cross-process session locks)
    redis_url: str = "redis://localhost:6379"
    use_redis_locks: bool = False
    session_lock_timeout_seconds: int = 30

    # WhatsApp delivery channel
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_api_version: str = "v18.0"

    # AI
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"

    # Flow engine
    flow_entry_node: str = "start"
    external_call_timeout_seconds: float = 10.0
    default_delay_seconds: int = 1
    max_delay_seconds: int = 86400

    # Security
    api_key: str | None = None

    # Deployment
    workers: int = 4
    environment: str = Field(default="production")
    log_level: str = "INFO"

    cors_allowed_origins: List[str] = Field(default_factory=list)
    allowed_hosts: str = Field(default="*")

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100
    process_rate_limit_per_minute: int = 600

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("max_delay_seconds", "default_delay_seconds")
    @classmethod
    def delay_must_be_positive(cls, v):
        if v < 0:
            raise ValueError("Delay limits must not be negative")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            # asyncio locks only exclude within one process
            if settings_obj.workers > 1 and not settings_obj.use_redis_locks:
                raise ValueError("USE_REDIS_LOCKS is required when running more than one worker in production")
            if not settings_obj.whatsapp_access_token or not settings_obj.whatsapp_phone_id:
                raise ValueError("WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_ID are required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
