from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from workspace_sync.features.unified_sync.domain.config import StalenessPolicy, SyncConfig

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Supabase / Postgres settings
    SUPABASE_DB_URL: str | None = None

    # Microsoft Graph settings
    GRAPH_API_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_ACCESS_TOKEN: str | None = None
    GRAPH_REQUEST_TIMEOUT: float = 30.0
    GRAPH_MAX_RETRIES: int = 3
    GRAPH_BACKOFF_FACTOR: float = 2.0
    GRAPH_PAGE_SIZE: int = 100
    GRAPH_MAX_PAGES: int = 10

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # UNIFIED SYNC SETTINGS
    # =================================================================
    SYNC_PERSISTENCE_ENABLED: bool = True
    SYNC_CACHE_TIMEOUT_MINUTES: float = 30.0
    SYNC_WEEKS_TO_LOAD_INITIALLY: int = 2
    SYNC_MAX_WEEKS_TO_LOAD: int = 26  # ~6 months
    SYNC_AUTO_LOAD_OLDER_DATA: bool = True
    SYNC_BACKGROUND_THROTTLE_MS: int = 500
    SYNC_BACKGROUND_START_DELAY_MS: int = 1000
    SYNC_CACHE_REFRESH_EVERY_WEEKS: int = 3
    SYNC_STOP_AFTER_EMPTY_WEEKS: int = 0  # 0 = never stop early
    SYNC_STALENESS_POLICY: StalenessPolicy = StalenessPolicy.PER_ENTITY
    SYNC_UPSERT_BATCH_SIZE: int = 50
    SYNC_TIMEZONE: str = "UTC"

    # Cache load bounds
    SYNC_EMAIL_LOAD_LIMIT: int = 100
    SYNC_CONTACT_LOAD_LIMIT: int = 200
    SYNC_MEETING_LOAD_LIMIT: int = 100
    SYNC_FOLDER_LOAD_LIMIT: int = 200

    # Remote fetch caps
    SYNC_CONTACTS_FETCH_CAP: int = 200
    SYNC_PEOPLE_FETCH_CAP: int = 100
    SYNC_USERS_FETCH_CAP: int = 50
    SYNC_MESSAGES_PER_WEEK_CAP: int = 500
    SYNC_EVENTS_PER_WEEK_CAP: int = 200

    # Worker settings
    SYNC_USER_ID: str | None = None
    WORKER_JOB: str = "unified_sync"

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def persistence_configured(self) -> bool:
        """True when persistence is enabled and a database URL is available."""
        return self.SYNC_PERSISTENCE_ENABLED and bool(self.SUPABASE_DB_URL)

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": min(self.DB_POOL_MIN_SIZE, 2),
                    "max_size": min(self.DB_POOL_MAX_SIZE, 5),
                    "timeout": 15.0,
                }
            )

        return config

    def get_sync_config(self) -> SyncConfig:
        """Build the engine configuration from the SYNC_* settings."""
        return SyncConfig(
            weeks_to_load_initially=self.SYNC_WEEKS_TO_LOAD_INITIALLY,
            max_weeks_to_load=self.SYNC_MAX_WEEKS_TO_LOAD,
            cache_timeout_minutes=self.SYNC_CACHE_TIMEOUT_MINUTES,
            auto_load_older_data=self.SYNC_AUTO_LOAD_OLDER_DATA,
            background_throttle_ms=self.SYNC_BACKGROUND_THROTTLE_MS,
            background_start_delay_ms=self.SYNC_BACKGROUND_START_DELAY_MS,
            cache_refresh_every_weeks=self.SYNC_CACHE_REFRESH_EVERY_WEEKS,
            stop_after_empty_weeks=self.SYNC_STOP_AFTER_EMPTY_WEEKS,
            staleness_policy=self.SYNC_STALENESS_POLICY,
            timezone=self.SYNC_TIMEZONE,
            contacts_fetch_cap=self.SYNC_CONTACTS_FETCH_CAP,
            people_fetch_cap=self.SYNC_PEOPLE_FETCH_CAP,
            users_fetch_cap=self.SYNC_USERS_FETCH_CAP,
            messages_per_week_cap=self.SYNC_MESSAGES_PER_WEEK_CAP,
            events_per_week_cap=self.SYNC_EVENTS_PER_WEEK_CAP,
        )

    def get_load_limits(self) -> dict[str, int]:
        """Per-collection bounds applied when reading the cache back."""
        return {
            "emails": self.SYNC_EMAIL_LOAD_LIMIT,
            "contacts": self.SYNC_CONTACT_LOAD_LIMIT,
            "meetings": self.SYNC_MEETING_LOAD_LIMIT,
            "folders": self.SYNC_FOLDER_LOAD_LIMIT,
        }


settings = Settings()
