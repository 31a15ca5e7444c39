"""
Line Metrics Engine - Configuration Management

This module handles all configuration settings for the Line Metrics Engine API.
It uses Pydantic Settings for environment variable management and validation.
"""

import os
from typing import List
from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application Settings
    APP_NAME: str = "Line Metrics Engine API"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", env="ENVIRONMENT")
    DEBUG: bool = Field(default=False, env="DEBUG")
    HOST: str = Field(default="0.0.0.0", env="HOST")
    PORT: int = Field(default=8000, env="PORT")
    LOG_LEVEL: str = Field(default="INFO", env="LOG_LEVEL")

    # CORS Settings
    ALLOWED_ORIGINS: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        env="ALLOWED_ORIGINS"
    )

    # Database Settings
    DATABASE_URL: str = Field(
        default="postgresql+asyncpg://localhost:5432/line_metrics",
        env="DATABASE_URL"
    )
    DATABASE_POOL_SIZE: int = Field(default=10, env="DATABASE_POOL_SIZE")
    DATABASE_MAX_OVERFLOW: int = Field(default=20, env="DATABASE_MAX_OVERFLOW")
    DATABASE_ECHO: bool = Field(default=False, env="DATABASE_ECHO")

    # Metrics Engine Settings
    RUN_BREAK_GAP_MINUTES: int = Field(default=1, env="RUN_BREAK_GAP_MINUTES")
    MIN_BREAKDOWN_DURATION_MINUTES: float = Field(default=5, env="MIN_BREAKDOWN_DURATION_MINUTES")
    TAILBACK_STATE_CODE: int = Field(default=16, env="TAILBACK_STATE_CODE")
    LACK_STATE_CODE: int = Field(default=8, env="LACK_STATE_CODE")
    CLAMP_NEGATIVE_COUNTER_DELTAS: bool = Field(default=True, env="CLAMP_NEGATIVE_COUNTER_DELTAS")

    # Monitoring Settings
    ENABLE_METRICS: bool = Field(default=True, env="ENABLE_METRICS")

    @validator("ALLOWED_ORIGINS", pre=True)
    def parse_allowed_origins(cls, v):
        """Parse comma-separated origins string."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @validator("ENVIRONMENT")
    def validate_environment(cls, v):
        """Validate environment setting."""
        allowed_envs = ["development", "testing", "staging", "production"]
        if v not in allowed_envs:
            raise ValueError(f"ENVIRONMENT must be one of {allowed_envs}")
        return v

    @validator("LOG_LEVEL")
    def validate_log_level(cls, v):
        """Validate log level setting."""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}")
        return v.upper()

    @validator("RUN_BREAK_GAP_MINUTES", "MIN_BREAKDOWN_DURATION_MINUTES")
    def validate_non_negative(cls, v):
        """Durations used by the engine cannot be negative."""
        if v < 0:
            raise ValueError("duration settings must be >= 0")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Environment-specific configurations
class DevelopmentSettings(Settings):
    """Development environment settings."""
    DEBUG: bool = True
    DATABASE_ECHO: bool = True
    LOG_LEVEL: str = "DEBUG"


class TestingSettings(Settings):
    """Testing environment settings."""
    DEBUG: bool = True
    ENABLE_METRICS: bool = False


class StagingSettings(Settings):
    """Staging environment settings."""
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"


class ProductionSettings(Settings):
    """Production environment settings."""
    DEBUG: bool = False
    LOG_LEVEL: str = "WARNING"
    DATABASE_ECHO: bool = False


def get_settings() -> Settings:
    """Get settings based on environment."""
    env = os.getenv("ENVIRONMENT", "development")

    if env == "development":
        return DevelopmentSettings()
    elif env == "testing":
        return TestingSettings()
    elif env == "staging":
        return StagingSettings()
    elif env == "production":
        return ProductionSettings()
    else:
        return Settings()


# Export the appropriate settings instance
settings = get_settings()
