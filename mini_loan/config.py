"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanConfig(BaseSettings):
    """Mini loan ledger configuration"""
    
    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "mini_loan.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: str = "*"  # Comma separated
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    currency: str = "INR"
    max_tenure_months: int = 360
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "MINILOAN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanConfig()


def get_config() -> LoanConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanConfig:
    """Reload configuration from environment"""
    global config
    config = LoanConfig()
    return config
