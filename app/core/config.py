from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    database_url: str = "sqlite+aiosqlite:////data/soc_sync.db"

    # SOC export API
    soc_api_url: str = "https://ws1.soc.com.br/WebSoc/exportadados"
    soc_timeout_seconds: float = 60.0

    # Batching
    batch_size: int = 50
    sub_batch_size: int = 25
    max_concurrent: int = 3
    max_batch_size: int = 500
    max_concurrent_limit: int = 10

    # Per-invocation wall-clock budget
    execution_budget_seconds: float = 150.0
    safety_margin_seconds: float = 30.0

    # Continuations: "local" runs them in-process, "http" re-invokes self_base_url
    continuation_mode: str = "local"
    self_base_url: str = "http://localhost:8000"
    continuation_sweep_seconds: int = 60
    continuation_stale_seconds: int = 120

    # Reject a new sync while any other kind is active for the same owner
    sync_global_guard: bool = False

    # Optional settings
    default_owner: str = "default"
    log_level: str = "INFO"
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
