from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database (local store for statuses and audit logs)
    DATABASE_URL: str = "sqlite+aiosqlite:///./alarm_triage.db"

    # Redis (cycle / triage events for WebSocket clients)
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_ENABLED: bool = True

    # App
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Poll scheduler
    POLL_INTERVAL: int = 60

    # Alarm sources
    SOURCE_TIMEOUT: float = 15.0            # seconds, login + fetch per source
    SOURCE_VERIFY_TLS: bool = True
    SOURCE_DEFAULT_PAGE_SIZE: int = 100

    # Mirror notes back to the sources (best-effort)
    MIRROR_ENABLED: bool = False
    MIRROR_TIMEOUT: float = 5.0

    # Seed for an empty registry, JSON list in env:
    # ALARM_SOURCES='[{"label": "ROC", "base_url": "https://10.2.1.100/api/v3", ...}]'
    ALARM_SOURCES: list[dict] = []

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
