from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Directory service
    DIRECTORY_URL: str = Field("https://homequest-c3k7.onrender.com", description="Base URL of the assignment directory service")
    STUDENT_ID: int = Field(1, description="Student ID sent with every directory request")
    STUDENT_NAME: str = Field("", description="Display name of the logged in student")

    # Local state
    STATE_BACKEND: str = Field("sql", description="Local state backend: sql or redis")
    DATABASE_URL: str = Field("sqlite+aiosqlite:///./homequest_state.db", description="Async SQLAlchemy URL for the device-local store")
    REDIS_URL: str = Field("redis://localhost:6379/0")
    STATE_KEY_PREFIX: str = "homequest:"

    # Network budgets
    FETCH_TIMEOUT_SECONDS: float = 5.0
    SUBMIT_TIMEOUT_SECONDS: float = 10.0
    SUBMIT_ATTEMPTS: int = 2  # first try + one retry
    SUBMIT_RETRY_DELAY_SECONDS: float = 1.5
    PENDING_RETRY_INTERVAL_SECONDS: int = 300  # 5 minutes

    # Default curriculum shown when no teacher assignment exists
    DEFAULT_STAGES: List[str] = Field(default_factory=lambda: ["Stage 1", "Stage 2", "Stage 3"])

    # Environment
    ENV: str = "production"  # development, staging, production
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

settings = Settings()
