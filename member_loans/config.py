"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class MemberLoansConfig(BaseSettings):
    """Member loan engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MEMBER_LOANS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Database configuration
    database_url: str = "sqlite:///member_loans.db"  # or memory:// for tests

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_interest_rate_percent: str = "5"  # Per grace period, Decimal as string
    default_grace_period_months: int = 2
    amount_precision: int = 2  # Decimal places kept on amounts due

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = log overdue notices only
    notification_timeout: float = 10.0


# Global configuration instance
config = MemberLoansConfig()


def get_config() -> MemberLoansConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MemberLoansConfig:
    """Reload configuration from environment"""
    global config
    config = MemberLoansConfig()
    return config
