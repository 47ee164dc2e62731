"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class BankConfig(BaseSettings):
    """Banking backend configuration"""

    model_config = SettingsConfigDict(
        env_prefix="BANK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///bank.db"  # or memory://
    sqlite_busy_timeout: float = 30.0
    lock_timeout_seconds: float = 10.0  # Max wait for an account lock

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    default_page_size: int = 10
    max_page_size: int = 100

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 1
    password_min_length: int = 6
    bootstrap_admin_email: Optional[str] = None
    bootstrap_admin_password: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Notification configuration
    notifier_backend: str = "log"  # log, smtp or webhook
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "no-reply@bank.local"
    smtp_use_tls: bool = True
    webhook_url: Optional[str] = None
    notification_timeout: float = 10.0
    notification_workers: int = 4


# Global configuration instance
config = BankConfig()


def get_config() -> BankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankConfig:
    """Reload configuration from environment"""
    global config
    config = BankConfig()
    return config
