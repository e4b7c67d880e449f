"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


SECONDS_PER_DAY = 24 * 60 * 60
MAX_WITHDRAWAL_DELAY_SECONDS = 30 * SECONDS_PER_DAY


class VaultConfig(BaseSettings):
    """Token vault configuration"""
    
    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "token_vault.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    
    # Security configuration
    auth_enabled: bool = False
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    max_fee_bps: int = 10_000
    max_withdrawal_delay_seconds: int = MAX_WITHDRAWAL_DELAY_SECONDS  # capped at 30 days
    seconds_per_year: int = 365 * SECONDS_PER_DAY
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "VAULT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = VaultConfig()


def get_config() -> VaultConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> VaultConfig:
    """Reload configuration from environment"""
    global config
    config = VaultConfig()
    return config
