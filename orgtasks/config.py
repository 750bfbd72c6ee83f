"""orgtasks Configuration Settings."""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Database
    DATABASE_URL: Optional[str] = None

    # Application
    APP_NAME: str = "orgtasks"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Task lifecycle
    AGGREGATE_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    AUTO_START_TASK_ON_PROGRESS: bool = False

    # Notifications
    NOTIFICATION_POLL_INTERVAL_SECONDS: float = Field(default=30.0, gt=0)
    NOTIFICATION_SUBSCRIPTION_TTL_SECONDS: float = Field(default=3600.0, gt=0)

    @property
    def cors_origins_list(self) -> List[str]:
        """Return the configured CORS origins as a sanitized list."""

        if not self.CORS_ORIGINS:
            return []

        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
