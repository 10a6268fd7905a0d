"""Configuration and settings management using pydantic-settings."""
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_prefix="STEPFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core service settings
    env: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Log level")

    # Definition store
    store_backend: str = Field(default="memory", description="'memory' or 'file'")
    store_path: str = Field(default="_tables/workflows", description="Root directory for the file store")

    # Executor
    max_concurrency: int = Field(default=1, ge=1, description="Concurrent steps per run; 1 means strictly sequential")
    pipeline_timeout_s: Optional[float] = Field(default=None, description="Overall run timeout in seconds")
    step_timeout_s: Optional[float] = Field(default=None, description="Per-step timeout in seconds")
    max_runs: int = Field(default=1000, ge=1, description="Finished runs kept in memory; the oldest are dropped first")

    # Remote action API
    action_api_url: str = Field(
        default="https://backend.composio.dev/api/v3",
        description="Base URL of the remote action service",
    )
    action_api_key: Optional[SecretStr] = Field(default=None, description="API key for the remote action service")
    action_timeout_s: float = Field(default=60.0, description="HTTP timeout for remote action calls")
    catalog_path: Optional[str] = Field(default=None, description="JSON file of extra action specs for the tool catalog")

    # API
    seed_samples: bool = Field(default=True, description="Store the sample workflows on startup")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
