"""Configuration settings for the feed engine"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    # Cache persistence backend (memory or sql)
    backend: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./nucleus.db"

    # Dedup caches
    record_cache_max: int = 1000
    record_cache_ttl_seconds: float = 60 * 60 * 24
    identity_cache_max: int = 1000
    identity_cache_ttl_seconds: float = 60 * 60 * 24

    # Network collaborators
    backlinks_timeout_seconds: float = 2.0
    fetch_concurrency: int = 8

    # Interaction scoring
    half_life_days: float = 3.0
    posting_window_days: int = 7
    posting_rate_ttl_seconds: float = 60.0
    stats_ttl_seconds: float = 300.0

    # Deleted posts kept for ancestor chain traversal
    tombstone_max: int = 10000
    tombstone_ttl_days: float = 30.0

    # App
    log_level: str = "INFO"
    log_json: bool = True
    debug: bool = False

    class Config:
        env_prefix = "NUCLEUS_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
