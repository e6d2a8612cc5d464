from datetime import date
from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "analytics-hub"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "ANALYTICS_HUB_ENVIRONMENT"))
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL", "ANALYTICS_HUB_LOG_LEVEL"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/analytics_hub",
        validation_alias=AliasChoices("DATABASE_URL", "ANALYTICS_HUB_DATABASE_URL"),
    )
    redis_url: str | None = Field(default=None, validation_alias=AliasChoices("REDIS_URL", "ANALYTICS_HUB_REDIS_URL"))

    # OAuth clients
    google_client_id: str | None = Field(default=None, validation_alias=AliasChoices("GOOGLE_OAUTH_CLIENT_ID", "ANALYTICS_HUB_GOOGLE_CLIENT_ID"))
    google_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("GOOGLE_OAUTH_CLIENT_SECRET", "ANALYTICS_HUB_GOOGLE_CLIENT_SECRET"))
    google_token_url: str = Field(default="https://oauth2.googleapis.com/token", validation_alias=AliasChoices("GOOGLE_TOKEN_URL", "ANALYTICS_HUB_GOOGLE_TOKEN_URL"))
    linkedin_client_id: str | None = Field(default=None, validation_alias=AliasChoices("LINKEDIN_CLIENT_ID", "ANALYTICS_HUB_LINKEDIN_CLIENT_ID"))
    linkedin_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("LINKEDIN_CLIENT_SECRET", "ANALYTICS_HUB_LINKEDIN_CLIENT_SECRET"))
    linkedin_token_url: str = Field(default="https://www.linkedin.com/oauth/v2/accessToken", validation_alias=AliasChoices("LINKEDIN_TOKEN_URL", "ANALYTICS_HUB_LINKEDIN_TOKEN_URL"))
    linkedin_api_version: str = Field(default="202401", validation_alias=AliasChoices("LINKEDIN_API_VERSION", "ANALYTICS_HUB_LINKEDIN_API_VERSION"))
    oauth_redirect_uri: str = Field(default="http://localhost:8000/api/integrations/callback", validation_alias=AliasChoices("OAUTH_REDIRECT_URI", "ANALYTICS_HUB_OAUTH_REDIRECT_URI"))
    oauth_encryption_key: str | None = Field(default=None, validation_alias=AliasChoices("OAUTH_ENCRYPTION_KEY", "ANALYTICS_HUB_OAUTH_ENCRYPTION_KEY"))
    token_store_identity_columns: bool = Field(default=True, validation_alias=AliasChoices("TOKEN_STORE_IDENTITY_COLUMNS", "ANALYTICS_HUB_TOKEN_STORE_IDENTITY_COLUMNS"))
    token_refresh_buffer_sec: int = Field(default=300, validation_alias=AliasChoices("TOKEN_REFRESH_BUFFER_SEC", "ANALYTICS_HUB_TOKEN_REFRESH_BUFFER_SEC"))

    # Cache tiers
    on_demand_cache_ttl_sec: int = Field(default=3600, validation_alias=AliasChoices("ON_DEMAND_CACHE_TTL_SEC", "ANALYTICS_HUB_ON_DEMAND_CACHE_TTL_SEC"))
    on_demand_stale_after_sec: int = Field(default=1800, validation_alias=AliasChoices("ON_DEMAND_STALE_AFTER_SEC", "ANALYTICS_HUB_ON_DEMAND_STALE_AFTER_SEC"))
    cache_fallback_lookback_days: int = Field(default=30, validation_alias=AliasChoices("CACHE_FALLBACK_LOOKBACK_DAYS", "ANALYTICS_HUB_CACHE_FALLBACK_LOOKBACK_DAYS"))
    snapshot_expiry_hour_utc: int = Field(default=8, validation_alias=AliasChoices("SNAPSHOT_EXPIRY_HOUR_UTC", "ANALYTICS_HUB_SNAPSHOT_EXPIRY_HOUR_UTC"))
    snapshot_expiry_minute_utc: int = Field(default=33, validation_alias=AliasChoices("SNAPSHOT_EXPIRY_MINUTE_UTC", "ANALYTICS_HUB_SNAPSHOT_EXPIRY_MINUTE_UTC"))
    snapshot_batch_size: int = Field(default=3, validation_alias=AliasChoices("SNAPSHOT_BATCH_SIZE", "ANALYTICS_HUB_SNAPSHOT_BATCH_SIZE"))
    portfolio_cache_retention_days: int = Field(default=7, validation_alias=AliasChoices("PORTFOLIO_CACHE_RETENTION_DAYS", "ANALYTICS_HUB_PORTFOLIO_CACHE_RETENTION_DAYS"))

    # Request handling
    date_floor: date = Field(default=date(2020, 1, 1), validation_alias=AliasChoices("DATE_FLOOR", "ANALYTICS_HUB_DATE_FLOOR"))
    default_range_days: int = Field(default=30, validation_alias=AliasChoices("DEFAULT_RANGE_DAYS", "ANALYTICS_HUB_DEFAULT_RANGE_DAYS"))
    analytics_request_timeout_sec: float = Field(default=45.0, validation_alias=AliasChoices("ANALYTICS_REQUEST_TIMEOUT_SEC", "ANALYTICS_HUB_ANALYTICS_REQUEST_TIMEOUT_SEC"))
    provider_http_timeout_sec: float = Field(default=15.0, validation_alias=AliasChoices("PROVIDER_HTTP_TIMEOUT_SEC", "ANALYTICS_HUB_PROVIDER_HTTP_TIMEOUT_SEC"))
    single_flight_enabled: bool = Field(default=True, validation_alias=AliasChoices("SINGLE_FLIGHT_ENABLED", "ANALYTICS_HUB_SINGLE_FLIGHT_ENABLED"))
    fetch_lock_ttl_sec: int = Field(default=120, validation_alias=AliasChoices("FETCH_LOCK_TTL_SEC", "ANALYTICS_HUB_FETCH_LOCK_TTL_SEC"))

    # Scheduler
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "ANALYTICS_HUB_SCHEDULER_ENABLED"))
    snapshot_cron_hour_utc: int = Field(default=8, validation_alias=AliasChoices("SNAPSHOT_CRON_HOUR_UTC", "ANALYTICS_HUB_SNAPSHOT_CRON_HOUR_UTC"))
    snapshot_cron_minute_utc: int = Field(default=33, validation_alias=AliasChoices("SNAPSHOT_CRON_MINUTE_UTC", "ANALYTICS_HUB_SNAPSHOT_CRON_MINUTE_UTC"))
    portfolio_cron_hour_utc: int = Field(default=9, validation_alias=AliasChoices("PORTFOLIO_CRON_HOUR_UTC", "ANALYTICS_HUB_PORTFOLIO_CRON_HOUR_UTC"))
    portfolio_cron_minute_utc: int = Field(default=0, validation_alias=AliasChoices("PORTFOLIO_CRON_MINUTE_UTC", "ANALYTICS_HUB_PORTFOLIO_CRON_MINUTE_UTC"))
    cache_purge_interval_minutes: int = Field(default=60, validation_alias=AliasChoices("CACHE_PURGE_INTERVAL_MINUTES", "ANALYTICS_HUB_CACHE_PURGE_INTERVAL_MINUTES"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
