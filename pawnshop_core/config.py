"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PawnshopConfig(BaseSettings):
    """Pawnshop settlement core configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...

    # Settlement configuration
    settlement_max_retries: int = 3  # Retries on ConcurrencyConflictError
    lock_timeout_seconds: float = 5.0  # Per-loan row lock wait
    payment_number_prefix: str = "PY"

    # Outbox configuration
    outbox_dispatch_inline: bool = True  # Relay right after each commit
    outbox_max_attempts: int = 5
    outbox_batch_size: int = 100

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    class Config:
        env_prefix = "PAWNSHOP_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = PawnshopConfig()


def get_config() -> PawnshopConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PawnshopConfig:
    """Reload configuration from environment"""
    global config
    config = PawnshopConfig()
    return config
