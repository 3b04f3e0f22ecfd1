"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LendingConfig(BaseSettings):
    """Microlending core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MICROLENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "microlending.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "INR"
    reporting_timezone: str = "Asia/Kolkata"  # Day boundaries for schedules, payments and reports

    # Collection report configuration
    report_default_days: int = 30
    report_max_days: int = 90
    report_max_workers: int = 8  # 1 = compute days sequentially
    report_day_timeout_seconds: float = 10.0


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
