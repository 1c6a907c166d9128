from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "CareSlot"
    API_V1_STR: str = "/api/v1"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "careslot"
    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"
    LOG_LEVEL: str = "INFO"

    # Slots
    SLOT_MIN_DURATION_MINUTES: int = 15
    SLOT_MAX_DURATION_MINUTES: int = 240
    DEFAULT_SLOT_DURATION_MINUTES: int = 30
    BOOKABLE_PAGE_SIZE: int = 50
    STALE_SLOT_RETENTION_DAYS: int = 30

    # Rescheduling
    DIRECT_RESCHEDULE_REQUIRES_CONFIRMATION: bool = True

    # Notifications
    NOTIFICATION_BACKEND: str = "log" # log, redis
    NOTIFICATION_CHANNEL: str = "careslot:appointments"
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Rate limiting
    RATE_LIMIT_MAX_ATTEMPTS: int = 20
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    class Config:
        case_sensitive = True
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"

settings = Settings()
