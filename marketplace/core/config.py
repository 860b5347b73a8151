from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "Marketplace Booking API"
    database_url: str = (
        "postgresql+psycopg2://marketplace:marketplace@db:5432/marketplace"  # pragma: allowlist secret
    )
    redis_url: str = "redis://redis:6379/0"
    timezone: str = "America/New_York"
    cors_origins: list[str] = ["http://localhost:3000"]
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60

    work_start_hour: int = 9
    work_end_hour: int = 17
    slot_length_minutes: int = 60
    booking_flow_ttl_seconds: int = 60 * 60 * 2
    booking_flow_lock_seconds: int = 60

    payment_api_base_url: str = "https://api.stripe.com"
    payment_api_key: str = ""
    payment_mock_mode: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
