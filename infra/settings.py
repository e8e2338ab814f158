"""Runtime configuration for the referral core."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="REFERRAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///./referral.db"
    log_level: str = "INFO"
    log_format: str = "console"

    # Invite codes
    invite_code_length: int = 8
    code_generation_attempts: int = 10
    invite_validity_days: int = 180
    invite_max_usage: int = 100

    # Credits
    credit_validity_days: int = 180
    expiring_window_days: int = 30

    # Rewards routed to manual approval at or above this amount
    approval_threshold: int = 50
    risk_review_threshold: float = 0.5
    risk_block_threshold: float = 0.8


@lru_cache
def get_settings() -> Settings:
    return Settings()
