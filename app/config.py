from functools import lru_cache
from typing import List, Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Splitbench"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or console

    # API
    API_V1_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./splitbench.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_ECHO: bool = False

    # Completion monitor
    EXPERIMENT_MONITOR_ENABLED: bool = True
    EXPERIMENT_MONITOR_INTERVAL_SECONDS: float = 300.0
    # Hard stop for tests that never reach significance; None keeps them running
    EXPERIMENT_MAX_DURATION_HOURS: Optional[int] = None

    # Audience saturation guard
    EXPERIMENT_SATURATION_LIMIT: int = 3
    EXPERIMENT_SATURATION_WINDOW_DAYS: int = 7

    # Alerts
    ALERT_THROTTLE_MINUTES: int = 15

    # CORS
    CORS_ORIGINS: Union[List[str], str] = []

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            # Handle both comma-separated and JSON array strings
            if v.strip().startswith("["):
                import json

                return json.loads(v)
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
