from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Map the env var named DATABASE_URL to this field
    database_url: str = Field(alias="DATABASE_URL")

    # Upper bound for one unit of work (settlement, bulk refund, reset)
    transaction_timeout_secs: float = 15.0

    # Transient store errors (deadlock, lock timeout) are retried this many times
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.05
    retry_max_delay: float = 1.0

    # Reconciliation reads; 0 turns the cache off
    cache_ttl_secs: float = 30.0

    default_balance_cents: int = 0

    # Never leak raw store errors to callers unless explicitly asked to
    expose_internal_errors: bool = False
    log_level: str = "INFO"

    # Pydantic v2-style config: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # don't error on POSTGRES_USER/PASSWORD/DB
    )

settings = Settings()
