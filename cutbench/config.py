"""
Application settings.

Connection and logging defaults are read from the environment (or a local
``.env`` file) using the ``CUTBENCH_`` prefix, e.g. ``CUTBENCH_POSTGRES_HOST``.
Per-run parameters are not settings; see ``cutbench.models.config.HarnessConfig``.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration for CutBench."""

    model_config = SettingsConfigDict(
        env_prefix="CUTBENCH_",
        env_file=".env",
        extra="ignore",
    )

    # Target database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DATABASE: str = "postgres"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_POOL_MIN_SIZE: int = 5
    POSTGRES_POOL_MAX_SIZE: int = 50
    POSTGRES_COMMAND_TIMEOUT: float = 60.0

    # Query defaults
    DEFAULT_QUERY_TIMEOUT_SECONDS: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = None


settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings
