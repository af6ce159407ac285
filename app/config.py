"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Flow Automation Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./automation.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    # Execution
    EXECUTION_TIMEOUT_SECONDS: float = 3600.0  # wall-clock budget per active segment
    DEFAULT_NODE_TIMEOUT_SECONDS: float = 300.0
    DEFAULT_MAX_RETRIES: int = 0
    RETRY_POLICY: str = "exponential"  # fixed, exponential, linear, none
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0
    WAIT_DEFAULT_TIMEOUT_MS: int = 86_400_000  # 24 hours
    ENGINE_SWEEP_INTERVAL_SECONDS: float = 1.0

    # Scheduler
    SCHEDULER_TICK_SECONDS: float = 1.0
    SCHEDULER_MAX_CONSECUTIVE_FAILURES: int = 5

    # Outbound HTTP
    HTTP_DEFAULT_TIMEOUT_MS: int = 30_000

    # Run history
    RUN_LIST_DEFAULT_LIMIT: int = 20

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
